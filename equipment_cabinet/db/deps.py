from collections.abc import Generator

from .session import SessionLocalCabinet


def get_db() -> Generator:
    db = SessionLocalCabinet()
    try:
        yield db
    finally:
        db.close()
