from __future__ import annotations

from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

JsonDocument = JSONB().with_variant(sa.JSON(), "sqlite")


def new_id() -> str:
    return str(uuid4())
