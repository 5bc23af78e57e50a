"""Small response envelopes shared across routers."""

from __future__ import annotations

from sqlmodel import SQLModel


class OkResponse(SQLModel):
    """Acknowledgement payload for mutations with no body to return."""

    ok: bool = True
