"""SQLAlchemy ORM models for safelink.

Data Model Layout
=================
::
    links table
    ├─ short_code (VARCHAR(8) PRIMARY KEY)
    ├─ long_url (TEXT NOT NULL)
    ├─ click_count (BIGINT DEFAULT 0 NOT NULL)
    └─ created_at (TIMESTAMPTZ, DEFAULT NOW())

How to Use
===========
**Step 1 — Import**::
    from safelink.models import Link

**Step 2 — Create a new link**::
    link = Link(short_code="aB3xY9", long_url="https://example.com")
    session.add(link)
    await session.commit()

**Step 3 — Count a click (atomic, never read-modify-write)**::
    await session.execute(
        update(Link).where(Link.short_code == "aB3xY9").values(click_count=Link.click_count + 1)
    )

Key Behaviours
===============
- short_code is the primary key, so the database is the final authority on
  uniqueness.
- short_code, long_url and created_at never change after insert.
- click_count only moves through the atomic UPDATE above.

Classes:
    Link:  A short code mapped to its target URL with a click counter.
"""

import datetime

from sqlalchemy import BigInteger, DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from safelink.database import Base

__all__ = ["Link"]


class Link(Base):
    __tablename__ = "links"

    short_code: Mapped[str] = mapped_column(String(8), primary_key=True)
    long_url: Mapped[str] = mapped_column(Text, nullable=False)
    click_count: Mapped[int] = mapped_column(BigInteger, default=0, server_default="0", nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<Link(short_code='{self.short_code}', click_count={self.click_count})>"
