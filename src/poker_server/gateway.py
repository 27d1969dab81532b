# src/poker_server/gateway.py
import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from .errors import InvalidState, NotAuthorized, NotFound, PokerError
from .logger import logger
from .models import (
    AddStoryCommand,
    CastVoteCommand,
    ChangeAvatarCommand,
    JoinCommand,
    JoinExisting,
    JoinNew,
    RevealCommand,
    RoomCommand,
    SelectFinalEstimateCommand,
    StoryCommand,
    UpdateSettingsCommand,
    WSIncomingMessage,
    WSOutgoingMessage,
)
from .registry import RoomRegistry, normalize_code
from .round_controller import TimerTicket
from .timers import AutoLockScheduler


class ConnectionManager:
    """Manages active WebSocket connections by connection id."""

    def __init__(self):
        self.connections: Dict[str, WebSocket] = {}

    async def connect(self, connection_id: str, websocket: WebSocket):
        await websocket.accept()
        self.connections[connection_id] = websocket
        logger.info(f"New connection '{connection_id}'. Total: {len(self.connections)}")

    def disconnect(self, connection_id: str):
        if self.connections.pop(connection_id, None) is not None:
            logger.info(f"Connection '{connection_id}' closed. Remaining: {len(self.connections)}")

    async def send(self, connection_id: str, message: WSOutgoingMessage):
        websocket = self.connections.get(connection_id)
        if websocket is None or websocket.client_state != WebSocketState.CONNECTED:
            return
        await websocket.send_text(message.model_dump_json())

    async def broadcast(self, connection_ids: Iterable[str], message: WSOutgoingMessage):
        payload = message.model_dump_json()
        targets = [
            (cid, self.connections[cid])
            for cid in connection_ids
            if cid in self.connections
            and self.connections[cid].client_state == WebSocketState.CONNECTED
        ]
        results = await asyncio.gather(
            *(ws.send_text(payload) for _, ws in targets), return_exceptions=True
        )
        for (cid, _), result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(f"Failed to deliver '{message.kind}' to '{cid}': {result}")


@dataclass(frozen=True)
class Binding:
    room_code: str
    user_id: str


class ConnectionBindings:
    """
    Bidirectional table between connections and (room, user) identities.

    A connection is bound to at most one (room, user) pair; binding it again
    replaces the previous pair. A user may be bound from several connections.
    """

    def __init__(self):
        self._by_connection: Dict[str, Binding] = {}
        self._by_room: Dict[str, Set[str]] = {}

    def bind(self, connection_id: str, room_code: str, user_id: str) -> Optional[Binding]:
        """Binds a connection and returns the binding it replaced, if any."""
        previous = self.remove(connection_id)
        binding = Binding(room_code=room_code, user_id=user_id)
        self._by_connection[connection_id] = binding
        self._by_room.setdefault(room_code, set()).add(connection_id)
        return previous

    def lookup(self, connection_id: str) -> Optional[Binding]:
        return self._by_connection.get(connection_id)

    def remove(self, connection_id: str) -> Optional[Binding]:
        binding = self._by_connection.pop(connection_id, None)
        if binding:
            members = self._by_room.get(binding.room_code)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self._by_room[binding.room_code]
        return binding

    def connections_in(self, room_code: str) -> Set[str]:
        return set(self._by_room.get(room_code, set()))

    def connections_of(self, room_code: str, user_id: str) -> List[str]:
        return [
            cid for cid in self._by_room.get(room_code, set())
            if self._by_connection[cid].user_id == user_id
        ]


Handler = Callable[[str, Dict[str, Any]], Awaitable[None]]


class SessionGateway:
    """
    Resolves inbound commands to a room and user, runs them against the
    registry under the room's lock, and fans the resulting events out to
    every connection bound to that room.

    Each accepted mutation produces one delta event. Joining or reconnecting
    additionally sends a full room_state snapshot to that connection only.
    """

    def __init__(
        self,
        registry: RoomRegistry,
        scheduler: Optional[AutoLockScheduler] = None,
        connections: Optional[ConnectionManager] = None,
    ):
        self.registry = registry
        self.scheduler = scheduler or AutoLockScheduler()
        self.connections = connections or ConnectionManager()
        self.bindings = ConnectionBindings()
        self._handlers: Dict[str, Handler] = {
            "join_room": self._join_room,
            "host_join_room": self._host_join_room,
            "rejoin_room": self._rejoin_room,
            "change_avatar": self._change_avatar,
            "update_room_settings": self._update_room_settings,
            "add_story": self._add_story,
            "set_current_story": self._set_current_story,
            "start_round": self._start_round,
            "start_timer": self._start_timer,
            "stop_timer": self._stop_timer,
            "cast_vote": self._cast_vote,
            "reveal_votes": self._reveal_votes,
            "select_final_estimate": self._select_final_estimate,
            "end_session": self._end_session,
        }

    # -------------------------- Connection lifecycle --------------------------

    async def connect(self, connection_id: str, websocket: WebSocket):
        await self.connections.connect(connection_id, websocket)

    def bind_connection(self, connection_id: str, room_code: str, user_id: str) -> Optional[Binding]:
        return self.bindings.bind(connection_id, normalize_code(room_code), user_id)

    async def disconnect(self, connection_id: str):
        """
        Drops a connection. If it was the user's last connection to the room,
        the user is marked disconnected and the rest of the room is told.
        """
        self.connections.disconnect(connection_id)
        binding = self.bindings.remove(connection_id)
        if binding is not None:
            await self._release(binding)

    async def _release(self, binding: Binding):
        async with self.registry.lock_for(binding.room_code):
            # A rejoin queued on the lock may have rebound this user already.
            if self.bindings.connections_of(binding.room_code, binding.user_id):
                return
            user = self.registry.disconnect_user(binding.room_code, binding.user_id)
            if user:
                await self._broadcast(binding.room_code, "user_disconnected", {"userId": user.id})

    # -------------------------- Inbound messages --------------------------

    async def handle_message(self, connection_id: str, raw: str):
        """
        Parses and executes one inbound frame. Failures are reported to the
        sender; none of them close the connection.
        """
        try:
            message = WSIncomingMessage.model_validate_json(raw)
            await self._handlers[message.kind](connection_id, message.payload)
        except InvalidState as e:
            logger.debug(f"Ignored command from '{connection_id}': {e.message}")
        except PokerError as e:
            logger.warning(f"Rejected command from '{connection_id}': {e.message}")
            await self._send(connection_id, "error", {"message": e.message})
        except ValidationError as e:
            await self._send(connection_id, "error", {"message": _describe(e)})
        except Exception:
            logger.error(f"Error processing message from '{connection_id}'", exc_info=True)
            await self._send(connection_id, "error", {"message": "Internal server error"})

    def _resolve(self, connection_id: str, room_code: str) -> Binding:
        binding = self.bindings.lookup(connection_id)
        if binding is None:
            raise NotFound("Join a room first")
        if normalize_code(room_code) != binding.room_code:
            raise NotAuthorized("Not a member of this room")
        return binding

    # -------------------------- Join handlers --------------------------

    async def _join_room(self, connection_id: str, payload: Dict[str, Any]):
        await self._join(connection_id, JoinNew.model_validate(payload))

    async def _host_join_room(self, connection_id: str, payload: Dict[str, Any]):
        command = JoinExisting.model_validate(payload)
        room = self.registry.get_room(command.room_code)
        if command.user_id != room.host_id:
            raise NotAuthorized("Only the host can rejoin as host")
        await self._join(connection_id, command)

    async def _rejoin_room(self, connection_id: str, payload: Dict[str, Any]):
        await self._join(connection_id, JoinExisting.model_validate(payload))

    async def _join(self, connection_id: str, command: JoinCommand):
        room_code = self.registry.get_room(command.room_code).code
        async with self.registry.lock_for(room_code):
            result = self.registry.join(command)
            previous = self.bind_connection(connection_id, room_code, result.user.id)
            snapshot = self.registry.snapshot(room_code, result.user.id)
            await self._send(connection_id, "room_state", snapshot.to_wire())
            kind = "user_reconnected" if result.reconnected else "user_joined"
            await self._broadcast(
                room_code, kind, {"user": result.user.to_wire()}, exclude=connection_id
            )
        if previous and previous != Binding(room_code, result.user.id):
            await self._release(previous)

    # -------------------------- Member handlers --------------------------

    async def _change_avatar(self, connection_id: str, payload: Dict[str, Any]):
        command = ChangeAvatarCommand.model_validate(payload)
        binding = self._resolve(connection_id, command.room_code)
        async with self.registry.lock_for(binding.room_code):
            user = self.registry.change_avatar(binding.room_code, binding.user_id, command.avatar_id)
            await self._broadcast(binding.room_code, "user_updated", {"user": user.to_wire()})

    async def _cast_vote(self, connection_id: str, payload: Dict[str, Any]):
        command = CastVoteCommand.model_validate(payload)
        binding = self._resolve(connection_id, command.room_code)
        async with self.registry.lock_for(binding.room_code):
            status = self.registry.cast_vote(
                binding.room_code, binding.user_id, command.story_id, command.value
            )
            await self._broadcast(binding.room_code, "voting_status_updated", {"votingStatus": status})
            await self._send(
                connection_id, "vote_confirmed", {"storyId": command.story_id, "value": command.value}
            )

    # -------------------------- Host handlers --------------------------

    async def _update_room_settings(self, connection_id: str, payload: Dict[str, Any]):
        command = UpdateSettingsCommand.model_validate(payload)
        binding = self._resolve(connection_id, command.room_code)
        async with self.registry.lock_for(binding.room_code):
            settings = self.registry.update_settings(binding.room_code, binding.user_id, command.settings)
            await self._broadcast(
                binding.room_code, "room_settings_updated", {"settings": settings.to_wire()}
            )

    async def _add_story(self, connection_id: str, payload: Dict[str, Any]):
        command = AddStoryCommand.model_validate(payload)
        binding = self._resolve(connection_id, command.room_code)
        async with self.registry.lock_for(binding.room_code):
            story = self.registry.add_story(binding.room_code, binding.user_id, command.story)
            await self._broadcast(binding.room_code, "story_added", {"story": story.to_wire()})

    async def _set_current_story(self, connection_id: str, payload: Dict[str, Any]):
        command = StoryCommand.model_validate(payload)
        binding = self._resolve(connection_id, command.room_code)
        async with self.registry.lock_for(binding.room_code):
            story = self.registry.set_current_story(binding.room_code, binding.user_id, command.story_id)
            await self._broadcast(
                binding.room_code,
                "current_story_changed",
                {"storyId": story.id, "story": story.to_wire()},
            )

    async def _start_round(self, connection_id: str, payload: Dict[str, Any]):
        command = StoryCommand.model_validate(payload)
        binding = self._resolve(connection_id, command.room_code)
        async with self.registry.lock_for(binding.room_code):
            new_round = self.registry.start_round(binding.room_code, binding.user_id, command.story_id)
            self.scheduler.cancel(binding.room_code)
            await self._broadcast(binding.room_code, "round_started", {"round": new_round.to_wire()})

    async def _start_timer(self, connection_id: str, payload: Dict[str, Any]):
        command = RoomCommand.model_validate(payload)
        binding = self._resolve(connection_id, command.room_code)
        async with self.registry.lock_for(binding.room_code):
            ticket = self.registry.start_timer(binding.room_code, binding.user_id)
            self.scheduler.schedule(ticket, self._on_timer_elapsed)
            await self._broadcast(
                binding.room_code,
                "timer_started",
                {
                    "timerStartedAt": ticket.started_at.isoformat(),
                    "timerEndsAt": ticket.ends_at.isoformat(),
                    "countdownSeconds": ticket.countdown_seconds,
                },
            )

    async def _stop_timer(self, connection_id: str, payload: Dict[str, Any]):
        command = RoomCommand.model_validate(payload)
        binding = self._resolve(connection_id, command.room_code)
        async with self.registry.lock_for(binding.room_code):
            self.registry.stop_timer(binding.room_code, binding.user_id)
            self.scheduler.cancel(binding.room_code)
            await self._broadcast(binding.room_code, "timer_stopped", {})

    async def _reveal_votes(self, connection_id: str, payload: Dict[str, Any]):
        command = RevealCommand.model_validate(payload)
        binding = self._resolve(connection_id, command.room_code)
        async with self.registry.lock_for(binding.room_code):
            result = self.registry.reveal_votes(binding.room_code, binding.user_id, command.story_id)
            self.scheduler.cancel(binding.room_code)
            await self._broadcast(binding.room_code, "votes_revealed", result.to_wire())

    async def _select_final_estimate(self, connection_id: str, payload: Dict[str, Any]):
        command = SelectFinalEstimateCommand.model_validate(payload)
        binding = self._resolve(connection_id, command.room_code)
        async with self.registry.lock_for(binding.room_code):
            story = self.registry.select_final_estimate(
                binding.room_code, binding.user_id, command.story_id, command.value
            )
            await self._broadcast(binding.room_code, "final_estimate_selected", {"story": story.to_wire()})

    async def _end_session(self, connection_id: str, payload: Dict[str, Any]):
        command = RoomCommand.model_validate(payload)
        binding = self._resolve(connection_id, command.room_code)
        async with self.registry.lock_for(binding.room_code):
            room = self.registry.end_session(binding.room_code, binding.user_id)
            self.scheduler.cancel(binding.room_code)
            await self._broadcast(binding.room_code, "session_ended", {"room": room.public_view()})

    # -------------------------- Timer & housekeeping --------------------------

    async def _on_timer_elapsed(self, ticket: TimerTicket):
        async with self.registry.lock_for(ticket.room_code):
            story_id = self.registry.auto_lock(ticket)
            if story_id is not None:
                await self._broadcast(ticket.room_code, "round_locked", {"storyId": story_id})

    def sweep_idle_rooms(self, max_age: timedelta) -> List[str]:
        codes = self.registry.sweep_idle_rooms(max_age)
        for code in codes:
            self.scheduler.cancel(code)
        return codes

    async def shutdown(self):
        await self.scheduler.shutdown()

    # -------------------------- Outbound --------------------------

    async def _send(self, connection_id: str, kind: str, payload: Dict[str, Any]):
        await self.connections.send(connection_id, WSOutgoingMessage(kind=kind, payload=payload))

    async def _broadcast(
        self, room_code: str, kind: str, payload: Dict[str, Any], exclude: Optional[str] = None
    ):
        targets = self.bindings.connections_in(room_code)
        targets.discard(exclude)
        await self.connections.broadcast(targets, WSOutgoingMessage(kind=kind, payload=payload))


def _describe(error: ValidationError) -> str:
    """Flattens a pydantic error into one client-readable line."""
    parts = [
        f"{'.'.join(str(loc) for loc in e['loc']) or 'message'}: {e['msg']}"
        for e in error.errors()
    ]
    return "Invalid message: " + "; ".join(parts)
