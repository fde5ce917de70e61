from contextlib import asynccontextmanager
from typing import Optional

import asyncpg

_pool: Optional[asyncpg.Pool] = None

# Seconds to wait for a free pooled connection
POOL_ACQUIRE_TIMEOUT = 10.0


async def init_pool(database_url: str):
    """Initialize the connection pool."""
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(database_url, min_size=2, max_size=10)
    return _pool


async def get_pool() -> asyncpg.Pool:
    """Get the existing connection pool."""
    global _pool
    if _pool is None:
        raise RuntimeError("Database pool not initialized. Call init_pool first.")
    return _pool


async def close_pool():
    """Close the connection pool."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None


@asynccontextmanager
async def get_connection():
    """Get a database connection from the pool."""
    pool = await get_pool()
    async with pool.acquire(timeout=POOL_ACQUIRE_TIMEOUT) as conn:
        yield conn


async def init_db():
    """Create tables if they don't exist."""
    async with get_connection() as conn:
        # Users table (identity is issued elsewhere; rows mirror the provider)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                email VARCHAR(255) NOT NULL UNIQUE,
                full_name VARCHAR(255),
                username VARCHAR(100) UNIQUE,
                role VARCHAR(20) NOT NULL CHECK (role IN ('creator', 'business', 'admin')),
                is_active BOOLEAN DEFAULT true,
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_users_role ON users(role)
        """)

        # Deals (aggregate root, never hard-deleted)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS deals (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                sender_id UUID NOT NULL REFERENCES users(id),
                receiver_id UUID NOT NULL REFERENCES users(id),
                creator_id UUID NOT NULL REFERENCES users(id),
                business_id UUID NOT NULL REFERENCES users(id),
                message TEXT NOT NULL,
                deal_value INTEGER CHECK (deal_value IS NULL OR deal_value > 0),
                offer_currency VARCHAR(3) NOT NULL DEFAULT 'USD',
                offer_pricing_mode VARCHAR(20) NOT NULL DEFAULT 'negotiable'
                    CHECK (offer_pricing_mode IN ('fixed', 'negotiable')),
                deal_stage VARCHAR(40) NOT NULL DEFAULT 'Waiting for Response'
                    CHECK (deal_stage IN ('Waiting for Response', 'Negotiating Terms', 'Platform Escrow',
                                          'Content Submitted', 'Approved', 'Payment Released')),
                status VARCHAR(20) CHECK (status IS NULL OR status = 'rejected'),
                accepted_at TIMESTAMPTZ,
                rejected_at TIMESTAMPTZ,
                creator_agreed_at TIMESTAMPTZ,
                business_agreed_at TIMESTAMPTZ,
                agreed_deadline DATE,
                approved_at TIMESTAMPTZ,
                payout_requested_at TIMESTAMPTZ,
                payout_status VARCHAR(20) CHECK (payout_status IS NULL OR payout_status IN ('requested', 'paid')),
                payment_released_at TIMESTAMPTZ,
                version INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW(),
                CHECK (sender_id <> receiver_id)
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_deals_sender_id ON deals(sender_id)
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_deals_receiver_id ON deals(receiver_id)
        """)

        # Term proposals (append-only)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS deal_term_proposals (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                deal_id UUID NOT NULL REFERENCES deals(id),
                user_id UUID NOT NULL REFERENCES users(id),
                amount INTEGER NOT NULL CHECK (amount > 0),
                deadline DATE NOT NULL,
                seq BIGSERIAL,
                created_at TIMESTAMPTZ DEFAULT clock_timestamp()
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_deal_term_proposals_deal_id
            ON deal_term_proposals(deal_id, seq DESC)
        """)

        # Content submissions (one row per delivery attempt)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS deal_submissions (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                deal_id UUID NOT NULL REFERENCES deals(id),
                submitted_by UUID NOT NULL REFERENCES users(id),
                url TEXT NOT NULL,
                status VARCHAR(20) NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'rework', 'approved')),
                rejection_reason TEXT,
                seq BIGSERIAL,
                created_at TIMESTAMPTZ DEFAULT clock_timestamp(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_deal_submissions_deal_id
            ON deal_submissions(deal_id, seq DESC)
        """)

        # Stage transition history
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS deal_stage_events (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                deal_id UUID NOT NULL REFERENCES deals(id),
                from_stage VARCHAR(40),
                to_stage VARCHAR(40) NOT NULL,
                trigger VARCHAR(40) NOT NULL,
                actor_id UUID REFERENCES users(id),
                created_at TIMESTAMPTZ DEFAULT clock_timestamp()
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_deal_stage_events_deal_id ON deal_stage_events(deal_id)
        """)

        # Security audit log
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS security_events (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                route VARCHAR(255) NOT NULL,
                reason VARCHAR(255) NOT NULL,
                user_id UUID,
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_security_events_created_at ON security_events(created_at DESC)
        """)
