# src/poker_server/__main__.py
import uvicorn

from .app import create_app
from .config import load_settings


def main():
    settings = load_settings()
    uvicorn.run(create_app(settings), host=settings.server_host, port=settings.server_port)


if __name__ == "__main__":
    main()
