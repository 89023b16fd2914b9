"""ASGI entrypoint: `uvicorn inboxsync.api.app:app` (role from APP_ROLE)."""

from inboxsync.api.factory import create_app

app = create_app()
