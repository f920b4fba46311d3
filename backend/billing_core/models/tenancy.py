from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Company(db.Model):
    """
    Multi-tenant root: every wallet, usage record and subscription belongs
    to exactly one company.

    Companies are authenticated and managed by the host platform; the ledger
    only needs the identity and the active flag (deactivation archives the
    wallet, it never deletes it).
    """
    __tablename__ = "companies"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Company id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
