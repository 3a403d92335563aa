from __future__ import annotations

import uuid


def new_id() -> str:
    """Opaque primary keys: UUID4 strings, portable across SQLite and Postgres."""
    return str(uuid.uuid4())
