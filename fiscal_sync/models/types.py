"""Column types shared by the models."""
from sqlalchemy import BigInteger, Integer, JSON
from sqlalchemy.dialects.postgresql import JSONB

# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntPK = BigInteger().with_variant(Integer(), 'sqlite')

# Upstream payloads and receipt snapshots
JSONPayload = JSON().with_variant(JSONB(), 'postgresql')
