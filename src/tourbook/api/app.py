"""ASGI entrypoint: uvicorn tourbook.api.app:app"""

from tourbook.api.factory import create_app

app = create_app()
