"""Admin and worker accounts.

An Account is a keypair plus the number it was handed out under. Numbers are unique
within a session: the admin is always 0 and workers count up from 1. Accounts are never
mutated; rotating the worker set always generates new keypairs.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import count

import xrpl
from xrpl.wallet import Wallet

from rotator.constants import ADMIN_NUMBER

log = logging.getLogger("rotator.accounts")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class Account:
    wallet: Wallet = field(repr=False, compare=False)
    number: int
    address: str
    created_at: datetime = field(default_factory=utcnow, compare=False)

    @classmethod
    def from_wallet(cls, wallet: Wallet, number: int, created_at: datetime | None = None) -> "Account":
        return cls(wallet=wallet, number=number, address=wallet.address, created_at=created_at or utcnow())

    @classmethod
    def from_seed(cls, seed: str, number: int, created_at: datetime | None = None) -> "Account":
        return cls.from_wallet(Wallet.from_seed(seed, algorithm=xrpl.CryptoAlgorithm.SECP256K1), number, created_at)

    @property
    def seed(self) -> str:
        return self.wallet.seed

    @property
    def is_admin(self) -> bool:
        return self.number == ADMIN_NUMBER

    def __str__(self) -> str:
        return f"#{self.number} {self.address}"


class AccountFactory:
    """Hands out worker accounts with session-unique numbers."""

    def __init__(self, start: int = ADMIN_NUMBER + 1) -> None:
        if start <= ADMIN_NUMBER:
            raise ValueError(f"worker numbers must start above {ADMIN_NUMBER}")
        self._numbers = count(start)

    @classmethod
    def after(cls, accounts: list[Account]) -> "AccountFactory":
        """Factory continuing after the highest number already used."""
        highest = max((a.number for a in accounts), default=ADMIN_NUMBER)
        return cls(start=highest + 1)

    def generate(self, n: int) -> list[Account]:
        """Create n brand-new worker accounts sharing one generation timestamp."""
        generated_at = utcnow()
        accounts = [
            Account.from_wallet(Wallet.create(algorithm=xrpl.CryptoAlgorithm.SECP256K1), next(self._numbers), generated_at)
            for _ in range(n)
        ]
        for a in accounts:
            log.debug("Generated worker %s", a)
        return accounts


def admin_from_seed(seed: str) -> Account:
    return Account.from_seed(seed, ADMIN_NUMBER)


def new_admin() -> Account:
    admin = Account.from_wallet(Wallet.create(algorithm=xrpl.CryptoAlgorithm.SECP256K1), ADMIN_NUMBER)
    log.info("Generated admin %s", admin.address)
    return admin
