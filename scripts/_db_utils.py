from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy.orm import Session

from app.identity.db import build_engine, make_sessionmaker


@contextmanager
def script_session(db_url: str):
    engine = build_engine(db_url)
    sm = make_sessionmaker(engine)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
