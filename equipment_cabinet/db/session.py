import os

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

load_dotenv()


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


CABINET_DB_URL = _require_env("CABINET_DB_URL")

engine_cabinet = create_engine(
    CABINET_DB_URL,
    pool_pre_ping=True,
    future=True,
)

SessionLocalCabinet = sessionmaker(
    bind=engine_cabinet,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)
