import os
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, declarative_base
from config import settings

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

def build_db_url():
    if settings.DATABASE_URL:
        return settings.DATABASE_URL

    url = (
        f"mysql+pymysql://{settings.DB_USER}:{settings.DB_PASSWORD}"
        f"@{settings.DB_HOST}:3306/{settings.DB_NAME}"
    )
    if settings.DB_SSL_CA:
        ssl_cert_path = os.path.join(BASE_DIR, settings.DB_SSL_CA)
        url += f"?ssl_ca={ssl_cert_path}&ssl_verify_cert=true"
    return url

DB_URL = build_db_url()

# SQLite needs to allow the session to cross FastAPI's worker threads
connect_args = {"check_same_thread": False} if DB_URL.startswith("sqlite") else {}

engine = create_engine(DB_URL, echo=settings.SQL_ECHO, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def init_db():
    # models must be imported so their tables are registered on Base
    import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
