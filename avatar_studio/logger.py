# avatar_studio/logger.py
from rich.console import Console
from rich.traceback import install

# Pretty tracebacks for unhandled errors in the API and the capture client
install(show_locals=False, suppress=["fastapi", "starlette", "httpx"])

# Shared console logger for the server and the capture client
console = Console(stderr=True)
