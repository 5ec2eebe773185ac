"""TheRxOS package exposing the FastAPI app.

Run with (development):
    uvicorn therxos.api:app --reload
"""

from .service import NotFoundError, TheRxService  # noqa: F401
