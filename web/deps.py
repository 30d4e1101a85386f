"""Request-scoped dependencies for the web API.

Routes receive a database session bound to the session factory stored on
``app.state`` at startup. The session commits when the handler returns,
rolls back when it raises, and is always closed afterwards.
"""

from __future__ import annotations

from collections.abc import Generator

from fastapi import Depends, Request
from sqlalchemy.orm import Session, sessionmaker


def get_session_factory(request: Request) -> sessionmaker[Session]:
    """Return the session factory installed by the app lifespan."""
    factory: sessionmaker[Session] = request.app.state.session_factory
    return factory


def get_db(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> Generator[Session, None, None]:
    """Yield a session for one request."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
