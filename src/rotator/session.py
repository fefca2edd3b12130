"""Session record: who the admin is, every worker ever generated, and what is traded."""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from rotator.accounts import Account, utcnow
from rotator.constants import ADMIN_NUMBER
from rotator.ledger import Token


def _account_to_dict(a: Account) -> dict[str, Any]:
    return {
        "number": a.number,
        "address": a.address,
        "seed": a.seed,
        "generation_timestamp": a.created_at.isoformat(),
    }


def _account_from_dict(d: dict[str, Any]) -> Account:
    a = Account.from_seed(d["seed"], int(d["number"]), datetime.fromisoformat(d["generation_timestamp"]))
    if a.address != d["address"]:
        raise ValueError(f"seed for account #{d['number']} derives {a.address}, session says {d['address']}")
    return a


@dataclass
class Session:
    admin: Account
    token: Token
    label: str
    workers: list[Account] = field(default_factory=list)
    pool: Any = None
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.admin.number != ADMIN_NUMBER:
            raise ValueError(f"admin account must be #{ADMIN_NUMBER}, got #{self.admin.number}")

    @property
    def file_name(self) -> str:
        safe = re.sub(r"[^A-Za-z0-9_.-]+", "-", self.label).strip("-") or "session"
        return f"{safe}_{self.created_at.strftime('%Y%m%dT%H%M%SZ')}_session.json"

    def current_workers(self) -> list[Account]:
        """Workers of the latest generation (the set the next lap runs with)."""
        if not self.workers:
            return []
        latest = max(w.created_at for w in self.workers)
        return [w for w in self.workers if w.created_at == latest]

    def to_dict(self) -> dict[str, Any]:
        return {
            "admin": _account_to_dict(self.admin),
            "wallets": [_account_to_dict(w) for w in self.workers],
            "token": self.token.to_dict(),
            "pool": self.pool,
            "label": self.label,
            "timestamp": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Session":
        return cls(
            admin=_account_from_dict(d["admin"]),
            token=Token.from_dict(d["token"]),
            label=d["label"],
            workers=[_account_from_dict(w) for w in d.get("wallets", [])],
            pool=d.get("pool"),
            created_at=datetime.fromisoformat(d["timestamp"]),
        )

    def public_view(self) -> dict[str, Any]:
        """to_dict() without seeds, for anything that leaves the process."""
        d = self.to_dict()
        d["admin"].pop("seed")
        for w in d["wallets"]:
            w.pop("seed")
        d["current_workers"] = [w.address for w in self.current_workers()]
        return d
