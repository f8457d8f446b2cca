from fastapi import HTTPException, Request
from sqlmodel import Session

from .auth import Identity
from .errors import AuthenticationError


def get_session(request: Request):
    # one session per request against the app's own engine
    with Session(request.app.state.engine) as session:
        yield session


def require_identity(request: Request) -> Identity:
    """Account identity from `Authorization: Bearer <token>`, else 401."""
    token = None
    auth = request.headers.get('authorization')
    if auth and auth.lower().startswith('bearer '):
        token = auth.split(' ', 1)[1].strip()
    if not token:
        raise HTTPException(status_code=401, detail='missing bearer token')
    try:
        return request.app.state.verifier.verify(token)
    except AuthenticationError as exc:
        raise HTTPException(status_code=401, detail=exc.message)
