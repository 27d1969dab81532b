# src/poker_server/persistence.py
import abc
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError

from .logger import logger
from .models import Room


class RoomStore(abc.ABC):
    """Durable storage for whole Room records, keyed by normalized room code."""

    @abc.abstractmethod
    def save_room(self, room: Room) -> bool: ...

    @abc.abstractmethod
    def load_room(self, room_code: str) -> Optional[Room]: ...

    @abc.abstractmethod
    def delete_room(self, room_code: str) -> bool: ...

    @abc.abstractmethod
    def list_idle_rooms(self, cutoff: datetime) -> List[str]: ...

    def close(self):
        pass


class InMemoryRoomStore(RoomStore):
    """Keeps serialized rooms in a dict. Used when persistence is disabled and in tests."""

    def __init__(self):
        self._rows: Dict[str, str] = {}

    def save_room(self, room: Room) -> bool:
        self._rows[room.code] = room.model_dump_json()
        return True

    def load_room(self, room_code: str) -> Optional[Room]:
        row = self._rows.get(room_code)
        return Room.model_validate_json(row) if row else None

    def delete_room(self, room_code: str) -> bool:
        return self._rows.pop(room_code, None) is not None

    def list_idle_rooms(self, cutoff: datetime) -> List[str]:
        return [
            code for code, row in self._rows.items()
            if Room.model_validate_json(row).updated_at < cutoff
        ]


class SQLiteRoomStore(RoomStore):
    """
    Handles all direct SQLite operations for room persistence. Each room is a
    single JSON document, replaced wholesale on every save.
    """

    def __init__(self, db_path: Path):
        """
        Opens the database and creates the rooms table if it is missing.

        Args:
            db_path: Location of the SQLite file. Parent directories are created.
        """
        self.db_path = db_path
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            logger.info(f"Connected to rooms database at '{self.db_path}'.")
            self._create_rooms_table()
        except sqlite3.Error as e:
            logger.critical(f"Database connection failed: {e}", exc_info=True)
            raise

    def _create_rooms_table(self):
        cursor = self.conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS rooms (
                room_code TEXT PRIMARY KEY,
                room_data TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self.conn.commit()

    def save_room(self, room: Room) -> bool:
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "INSERT OR REPLACE INTO rooms (room_code, room_data, updated_at) VALUES (?, ?, ?)",
                (room.code, room.model_dump_json(), room.updated_at.isoformat()),
            )
            self.conn.commit()
            return True
        except sqlite3.Error:
            logger.error(f"Failed to save room '{room.code}' to database.", exc_info=True)
            return False

    def load_room(self, room_code: str) -> Optional[Room]:
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT room_data FROM rooms WHERE room_code = ?", (room_code,))
            row = cursor.fetchone()
            if row:
                room = Room.model_validate_json(row[0])
                logger.info(f"Loaded room '{room_code}' from the database.")
                return room
            return None
        except (sqlite3.Error, ValidationError):
            logger.error(f"Failed to load room '{room_code}' from database.", exc_info=True)
            return None

    def delete_room(self, room_code: str) -> bool:
        try:
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM rooms WHERE room_code = ?", (room_code,))
            self.conn.commit()
            return cursor.rowcount > 0
        except sqlite3.Error:
            logger.error(f"Failed to delete room '{room_code}' from database.", exc_info=True)
            return False

    def list_idle_rooms(self, cutoff: datetime) -> List[str]:
        # ISO-8601 timestamps in UTC sort lexicographically.
        cursor = self.conn.cursor()
        cursor.execute("SELECT room_code FROM rooms WHERE updated_at < ?", (cutoff.isoformat(),))
        return [row[0] for row in cursor.fetchall()]

    def close(self):
        self.conn.close()
        logger.info("Rooms database connection closed.")
