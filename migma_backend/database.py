"""
Database Module
===============
asyncpg persistence for the payment pipeline.

This module provides:
- Database: connection pool manager with idempotent migrations
- PostgresOrderStore: IOrderStore over visa_orders and related tables
- PostgresDirectory: admin / seller lookups for the fan-out

pip install asyncpg
"""

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, List, Optional

import asyncpg
import structlog

from migma_backend.errors import CheckoutConflictError, OrderNotFoundError, StoreError
from migma_backend.schemas.orders import (
    ClientProfile,
    Order,
    PaymentStatus,
    Product,
    Provider,
    ProviderLinkage,
    Seller,
)
from migma_backend.services.directory import Directory
from migma_backend.storage.order_store import FANOUT_MARKER, FunnelEvent, IOrderStore, WiseTransferRecord

logger = structlog.get_logger().bind(component="database")


MIGRATIONS = [
    """
    CREATE TABLE IF NOT EXISTS visa_products (
        slug TEXT PRIMARY KEY,
        name TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS clients (
        id TEXT PRIMARY KEY,
        document_number TEXT,
        date_of_birth TEXT,
        postal_code TEXT,
        address_line TEXT,
        city TEXT,
        state TEXT,
        phone TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS service_requests (
        id TEXT PRIMARY KEY,
        client_id TEXT REFERENCES clients(id),
        status VARCHAR(30) NOT NULL DEFAULT 'pending',
        updated_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS visa_orders (
        id TEXT PRIMARY KEY,
        order_number TEXT UNIQUE NOT NULL,
        product_slug TEXT NOT NULL DEFAULT '',
        total_price_usd NUMERIC(12, 2) NOT NULL,
        base_price_usd NUMERIC(12, 2),
        extra_unit_price_usd NUMERIC(12, 2),
        extra_units INTEGER NOT NULL DEFAULT 0,
        calculation_type VARCHAR(30) NOT NULL DEFAULT 'base_plus_units',
        payment_method VARCHAR(30),
        payment_status VARCHAR(20) NOT NULL DEFAULT 'pending',
        payment_metadata JSONB NOT NULL DEFAULT '{}',
        service_request_id TEXT,
        seller_id TEXT,
        client_name TEXT NOT NULL DEFAULT '',
        client_email TEXT NOT NULL DEFAULT '',
        client_whatsapp TEXT,
        client_cpf TEXT,
        client_birthdate TEXT,
        client_cep TEXT,
        client_address_street TEXT,
        client_address_number TEXT,
        client_address_neighborhood TEXT,
        client_address_city TEXT,
        client_address_state TEXT,
        client_address_complement TEXT,
        dependent_names JSONB NOT NULL DEFAULT '[]',
        parcelow_order_id TEXT,
        parcelow_checkout_url TEXT,
        parcelow_status TEXT,
        parcelow_status_code INTEGER,
        wise_transfer_id TEXT,
        wise_quote_id TEXT,
        wise_recipient_id TEXT,
        wise_payment_status TEXT,
        wise_checkout_url TEXT,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
        id TEXT PRIMARY KEY,
        service_request_id TEXT NOT NULL,
        external_payment_id TEXT,
        status VARCHAR(20) NOT NULL DEFAULT 'pending',
        raw_webhook_log JSONB,
        updated_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS seller_funnel_events (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        seller_id TEXT NOT NULL,
        product_slug TEXT NOT NULL,
        event_type VARCHAR(40) NOT NULL,
        session_id TEXT,
        metadata JSONB NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS wise_transfers (
        wise_transfer_id TEXT PRIMARY KEY,
        visa_order_id TEXT NOT NULL,
        wise_quote_uuid TEXT NOT NULL,
        wise_recipient_id TEXT NOT NULL,
        source_currency VARCHAR(3) NOT NULL,
        target_currency VARCHAR(3) NOT NULL,
        source_amount NUMERIC(14, 2),
        target_amount NUMERIC(14, 2),
        exchange_rate NUMERIC(18, 8),
        fee_amount NUMERIC(14, 2),
        status TEXT NOT NULL,
        status_details JSONB NOT NULL DEFAULT '{}',
        updated_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sellers (
        seller_id_public TEXT PRIMARY KEY,
        full_name TEXT NOT NULL DEFAULT '',
        email TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS platform_admins (
        email TEXT PRIMARY KEY,
        active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_visa_orders_parcelow ON visa_orders(parcelow_order_id)",
    "CREATE INDEX IF NOT EXISTS idx_visa_orders_wise ON visa_orders(wise_transfer_id)",
    "CREATE INDEX IF NOT EXISTS idx_payments_service_request ON payments(service_request_id)",
    "CREATE INDEX IF NOT EXISTS idx_funnel_seller ON seller_funnel_events(seller_id)",
]


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async database connection pool manager"""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def initialize(self):
        """Open the pool and run migrations"""
        if self._pool is not None:
            return
        try:
            self._pool = await asyncpg.create_pool(
                self.dsn, min_size=self.min_size, max_size=self.max_size
            )
        except (OSError, asyncpg.PostgresError) as e:
            logger.error("database_init_failed", error=str(e))
            raise StoreError(f"Could not connect to database: {e}") from e
        logger.info("database_pool_initialized", max_size=self.max_size)
        await self._run_migrations()

    async def close(self):
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("database_pool_closed")

    @asynccontextmanager
    async def acquire(self):
        if self._pool is None:
            await self.initialize()
        async with self._pool.acquire() as conn:
            yield conn

    async def execute(self, query: str, *args) -> str:
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch_one(self, query: str, *args) -> Optional[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetch_all(self, query: str, *args) -> List[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetch(query, *args)

    async def _run_migrations(self):
        async with self.acquire() as conn:
            for migration in MIGRATIONS:
                await conn.execute(migration)
        logger.info("database_migrations_complete", count=len(MIGRATIONS))


# =============================================================================
# ROW MAPPING
# =============================================================================

def _json_value(value: Any, default: Any) -> Any:
    if value is None:
        return default
    return json.loads(value) if isinstance(value, str) else value


def _order_from_row(row: asyncpg.Record) -> Order:
    data = dict(row)
    data["payment_metadata"] = _json_value(data.get("payment_metadata"), {})
    data["dependent_names"] = _json_value(data.get("dependent_names"), [])
    return Order.model_validate(data)


def _rows_affected(status: str) -> int:
    # asyncpg returns e.g. "UPDATE 1"
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError):
        return 0


# =============================================================================
# ORDER STORE
# =============================================================================

class PostgresOrderStore(IOrderStore):
    """IOrderStore backed by the visa_orders schema"""

    def __init__(self, db: Database):
        self.db = db

    async def get(self, order_id: str) -> Optional[Order]:
        row = await self.db.fetch_one("SELECT * FROM visa_orders WHERE id = $1", order_id)
        return _order_from_row(row) if row else None

    async def find_by_provider_reference(
        self,
        provider: Provider,
        external_id: str,
        reference: Optional[str] = None,
    ) -> Optional[Order]:
        column = "parcelow_order_id" if provider == Provider.PARCELOW else "wise_transfer_id"
        row = await self.db.fetch_one(
            f"SELECT * FROM visa_orders WHERE {column} = $1 LIMIT 1", external_id
        )
        if row is None and reference:
            row = await self.db.fetch_one(
                "SELECT * FROM visa_orders WHERE order_number = $1 LIMIT 1", reference
            )
        return _order_from_row(row) if row else None

    async def attach_provider(self, order_id: str, linkage: ProviderLinkage) -> Order:
        if linkage.provider == Provider.PARCELOW:
            query = """
                UPDATE visa_orders
                SET parcelow_order_id = $2, parcelow_checkout_url = $3,
                    parcelow_status = $4, parcelow_status_code = $5,
                    payment_method = 'parcelow', updated_at = NOW()
                WHERE id = $1 AND parcelow_order_id IS NULL AND wise_transfer_id IS NULL
                RETURNING *
            """
            args = (
                linkage.parcelow_order_id,
                linkage.checkout_url,
                linkage.status_text,
                linkage.status_code,
            )
        else:
            query = """
                UPDATE visa_orders
                SET wise_transfer_id = $2, wise_quote_id = $3, wise_recipient_id = $4,
                    wise_payment_status = $5, wise_checkout_url = $6,
                    payment_method = 'wise', updated_at = NOW()
                WHERE id = $1 AND parcelow_order_id IS NULL AND wise_transfer_id IS NULL
                RETURNING *
            """
            args = (
                linkage.wise_transfer_id,
                linkage.wise_quote_id,
                linkage.wise_recipient_id,
                linkage.status_text,
                linkage.checkout_url,
            )

        row = await self.db.fetch_one(query, order_id, *args)
        if row is not None:
            return _order_from_row(row)

        existing = await self.get(order_id)
        if existing is None:
            raise OrderNotFoundError(order_id)
        raise CheckoutConflictError(
            f"Order {existing.order_number} already has a "
            f"{existing.linked_provider.value if existing.linked_provider else 'provider'} checkout"
        )

    async def update_provider_status(
        self,
        order_id: str,
        provider: Provider,
        status_text: Optional[str],
        status_code: Optional[int] = None,
    ) -> None:
        if provider == Provider.PARCELOW:
            status = await self.db.execute(
                """
                UPDATE visa_orders
                SET parcelow_status = $2, parcelow_status_code = $3, updated_at = NOW()
                WHERE id = $1
                """,
                order_id, status_text, status_code,
            )
        else:
            status = await self.db.execute(
                "UPDATE visa_orders SET wise_payment_status = $2, updated_at = NOW() WHERE id = $1",
                order_id, status_text,
            )
        if _rows_affected(status) == 0:
            raise OrderNotFoundError(order_id)

    async def complete_payment(
        self,
        order_id: str,
        provider: Provider,
        status_text: Optional[str],
        status_code: Optional[int],
        metadata: dict,
    ) -> bool:
        if provider == Provider.PARCELOW:
            mirror, mirror_args = "parcelow_status = $3, parcelow_status_code = $4", (status_text, status_code)
        else:
            mirror, mirror_args = "wise_payment_status = $3", (status_text,)
        row = await self.db.fetch_one(
            f"""
            UPDATE visa_orders
            SET payment_status = 'completed',
                payment_metadata = payment_metadata || $2::jsonb,
                {mirror},
                updated_at = NOW()
            WHERE id = $1 AND payment_status <> 'completed'
            RETURNING id
            """,
            order_id,
            json.dumps(metadata, default=str),
            *mirror_args,
        )
        return row is not None

    async def set_payment_status(self, order_id: str, status: PaymentStatus) -> bool:
        row = await self.db.fetch_one(
            """
            UPDATE visa_orders
            SET payment_status = $2, updated_at = NOW()
            WHERE id = $1 AND payment_status NOT IN ('completed', $2)
            RETURNING id
            """,
            order_id,
            status.value,
        )
        return row is not None

    async def claim_fanout(self, order_id: str, dispatched_at: datetime) -> bool:
        row = await self.db.fetch_one(
            """
            UPDATE visa_orders
            SET payment_metadata = payment_metadata || jsonb_build_object($2::text, $3::text),
                updated_at = NOW()
            WHERE id = $1 AND NOT (payment_metadata ? $2)
            RETURNING id
            """,
            order_id,
            FANOUT_MARKER,
            dispatched_at.isoformat(),
        )
        return row is not None

    async def mark_service_request_paid(self, service_request_id: str) -> bool:
        status = await self.db.execute(
            "UPDATE service_requests SET status = 'paid', updated_at = NOW() WHERE id = $1",
            service_request_id,
        )
        return _rows_affected(status) > 0

    async def mark_payment_record_paid(
        self, service_request_id: str, order_id: str, audit: dict
    ) -> bool:
        status = await self.db.execute(
            """
            UPDATE payments
            SET status = 'paid', raw_webhook_log = $3::jsonb, updated_at = NOW()
            WHERE service_request_id = $1 AND external_payment_id = $2
            """,
            service_request_id,
            order_id,
            json.dumps(audit, default=str),
        )
        return _rows_affected(status) > 0

    async def record_funnel_event(self, event: FunnelEvent) -> None:
        await self.db.execute(
            """
            INSERT INTO seller_funnel_events
            (seller_id, product_slug, event_type, session_id, metadata, created_at)
            VALUES ($1, $2, $3, $4, $5::jsonb, $6)
            """,
            event.seller_id,
            event.product_slug,
            event.event_type,
            event.session_id,
            json.dumps(event.metadata, default=str),
            event.created_at,
        )

    async def record_wise_transfer(self, record: WiseTransferRecord) -> None:
        await self.db.execute(
            """
            INSERT INTO wise_transfers
            (wise_transfer_id, visa_order_id, wise_quote_uuid, wise_recipient_id,
             source_currency, target_currency, source_amount, target_amount,
             exchange_rate, fee_amount, status, status_details, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12::jsonb, $13)
            ON CONFLICT (wise_transfer_id) DO NOTHING
            """,
            record.wise_transfer_id,
            record.visa_order_id,
            record.wise_quote_uuid,
            record.wise_recipient_id,
            record.source_currency,
            record.target_currency,
            record.source_amount,
            record.target_amount,
            record.exchange_rate,
            record.fee_amount,
            record.status,
            json.dumps(record.status_details, default=str),
            record.updated_at,
        )

    async def update_wise_transfer(self, transfer_id: str, status: str, details: dict) -> None:
        await self.db.execute(
            """
            UPDATE wise_transfers
            SET status = $2, status_details = $3::jsonb, updated_at = $4
            WHERE wise_transfer_id = $1
            """,
            transfer_id,
            status,
            json.dumps(details, default=str),
            datetime.utcnow(),
        )

    async def get_client_profile(self, service_request_id: str) -> Optional[ClientProfile]:
        row = await self.db.fetch_one(
            """
            SELECT c.document_number, c.date_of_birth, c.postal_code,
                   c.address_line, c.city, c.state, c.phone
            FROM service_requests sr
            JOIN clients c ON c.id = sr.client_id
            WHERE sr.id = $1
            """,
            service_request_id,
        )
        return ClientProfile.model_validate(dict(row)) if row else None

    async def get_product(self, slug: str) -> Optional[Product]:
        row = await self.db.fetch_one("SELECT slug, name FROM visa_products WHERE slug = $1", slug)
        return Product.model_validate(dict(row)) if row else None


# =============================================================================
# DIRECTORY
# =============================================================================

class PostgresDirectory(Directory):
    """Admins and sellers read from the platform tables"""

    def __init__(self, db: Database):
        self.db = db

    async def list_admin_emails(self) -> list[str]:
        rows = await self.db.fetch_all(
            "SELECT email FROM platform_admins WHERE active ORDER BY email"
        )
        return [row["email"] for row in rows if row["email"]]

    async def get_seller(self, seller_id: str) -> Optional[Seller]:
        row = await self.db.fetch_one(
            "SELECT seller_id_public, full_name, email FROM sellers WHERE seller_id_public = $1",
            seller_id,
        )
        if row is None:
            return None
        return Seller(seller_id=row["seller_id_public"], full_name=row["full_name"], email=row["email"])
