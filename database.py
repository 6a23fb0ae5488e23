"""Database connection and session management."""
from decimal import Decimal
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session
from typing import Any, Dict, Generator
import logging

from config import DATABASE_URL, SEED_DEMO_DATA
from models import Account, Base, Product

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> Dict[str, Any]:
    """Connection pool settings for the configured backend."""
    if url.startswith("sqlite"):
        # Connections are shared across request threads
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_pre_ping": True,  # Verify connections before use
        "pool_recycle": 3600,  # Recycle connections after 1 hour
        "pool_timeout": 30,  # Wait max 30 seconds for a connection
    }


engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))

if engine.dialect.name == "sqlite":
    # SQLite only has a database-wide write lock. Taking it when the
    # transaction starts makes concurrent writers queue on the busy timeout
    # instead of failing on a read-to-write lock upgrade.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for getting database session.

    Yields:
        Database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Initialize database tables and seed data."""
    Base.metadata.create_all(bind=engine)

    if not SEED_DEMO_DATA:
        return

    db = SessionLocal()
    try:
        if db.query(Product).count() == 0:
            products = [
                Product(sku="TSH-1001", name="Classic T-Shirt", category="Tops", price=Decimal("19.90"),
                        stock=120, sizes=["S", "M", "L", "XL"], colors=["white", "black"]),
                Product(sku="HOO-1002", name="Zip Hoodie", category="Tops", price=Decimal("49.00"),
                        stock=40, sizes=["M", "L", "XL"], colors=["grey", "navy"]),
                Product(sku="JEA-1003", name="Slim Jeans", category="Bottoms", price=Decimal("59.90"),
                        stock=60, sizes=["S", "M", "L"], colors=["blue"]),
                Product(sku="CAP-1004", name="Baseball Cap", category="Accessories", price=Decimal("14.50"),
                        stock=8, low_stock_threshold=10, colors=["black", "red"]),
                Product(sku="TOT-1005", name="Canvas Tote", category="Accessories", price=Decimal("12.00"),
                        stock=200),
            ]
            db.add_all(products)
            logger.info("Seeded database with sample products")

        if db.query(Account).count() == 0:
            db.add_all([
                Account(id="user_alice", email="alice@example.com", role="user", api_token="user-token-123"),
                Account(id="user_admin", email="admin@example.com", role="admin", api_token="admin-token-456"),
                Account(id="user_test", email="test@example.com", role="user", api_token="test-token-789"),
            ])
            logger.info("Seeded database with demo accounts")

        db.commit()
    finally:
        db.close()
