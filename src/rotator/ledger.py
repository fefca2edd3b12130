"""Ledger client boundary and its XRP Ledger implementation.

The lap engine only needs a few things from a ledger: XRP and token balances,
a confirmed transfer and what it costs, a lazily created token account (trust
line) and a network time reference. Everything XRPL-specific lives in XRPLLedgerClient.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Any, Protocol

from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.asyncio.ledger import get_latest_validated_ledger_sequence
from xrpl.core.binarycodec import encode, encode_for_signing
from xrpl.core.keypairs import sign
from xrpl.models import IssuedCurrency, SubmitOnly, Transaction
from xrpl.models.amounts import IssuedCurrencyAmount
from xrpl.models.requests import AccountInfo, AccountLines, Fee, ServerState, Tx
from xrpl.models.transactions import Payment, TrustSet
from xrpl.utils import drops_to_xrp, xrp_to_drops

import rotator.constants as C
from rotator.accounts import Account
from rotator.fee_info import FeeInfo

log = logging.getLogger("rotator.ledger")


class LedgerError(Exception):
    """A ledger call failed (network, timeout, malformed response)."""


class TransferError(LedgerError):
    """A transfer was not confirmed. Safe to retry with a fresh transaction."""

    def __init__(self, message: str, *, engine_result: str | None = None, tx_hash: str | None = None):
        super().__init__(message)
        self.engine_result = engine_result
        self.tx_hash = tx_hash


@dataclass(frozen=True, slots=True)
class Token:
    currency: str
    issuer: str

    def issued_currency(self) -> IssuedCurrency:
        return IssuedCurrency(currency=self.currency, issuer=self.issuer)

    def amount(self, value: Decimal) -> IssuedCurrencyAmount:
        return IssuedCurrencyAmount(currency=self.currency, issuer=self.issuer, value=format(value, "f"))

    def to_dict(self) -> dict[str, str]:
        return {"currency": self.currency, "issuer": self.issuer}

    @classmethod
    def from_dict(cls, d: dict) -> "Token":
        return cls(currency=d["currency"], issuer=d["issuer"])

    def __str__(self) -> str:
        return f"{self.currency}.{self.issuer}"


class LedgerClient(Protocol):
    async def get_balance(self, address: str) -> Decimal: ...
    async def get_token_balance(self, address: str, token: Token) -> Decimal: ...
    async def transfer(self, sender: Account, destination: str, amount: Decimal, *, token: Token | None = None) -> str: ...
    async def ensure_token_account(self, owner: Account, token: Token, *, payer: Account) -> str: ...
    async def network_reference(self) -> int: ...
    async def transfer_fee(self) -> Decimal: ...


@dataclass
class AccountRecord:
    lock: asyncio.Lock
    next_seq: int | None = None


def _sha512half(b: bytes) -> bytes:
    return hashlib.sha512(b).digest()[:32]


def _txid_from_signed_blob_hex(signed_blob_hex: str) -> str:
    # XRPL txid = SHA512Half(0x54584E00 || signed_bytes)
    return _sha512half(bytes.fromhex("54584E00") + bytes.fromhex(signed_blob_hex)).hex().upper()


class XRPLLedgerClient:
    """LedgerClient over rippled JSON-RPC.

    Transactions are signed locally with sequences handed out by a per-account lock, so
    any number of concurrent payments from the admin get distinct, gapless sequences.
    A transfer returns only once the transaction is validated with tesSUCCESS.
    """

    def __init__(
        self,
        client: AsyncJsonRpcClient,
        *,
        rpc_timeout: float = C.RPC_TIMEOUT,
        submit_timeout: float = C.SUBMIT_TIMEOUT,
        horizon: int = C.HORIZON,
        max_fee_drops: int = C.MAX_FEE_DROPS,
        activation_xrp: Decimal = Decimal("1.5"),
        trust_limit: Decimal = Decimal("1000000000"),
    ) -> None:
        self.client = client
        self.rpc_timeout = rpc_timeout
        self.submit_timeout = submit_timeout
        self.horizon = horizon
        self.max_fee_drops = max_fee_drops
        self.activation_xrp = activation_xrp
        self.trust_limit = trust_limit
        self.accounts: dict[str, AccountRecord] = {}

    @classmethod
    def from_config(cls, url: str, cfg: dict) -> "XRPLLedgerClient":
        r, t = cfg["rippled"], cfg["transfers"]
        return cls(
            AsyncJsonRpcClient(url),
            rpc_timeout=float(r["rpc_timeout"]),
            submit_timeout=float(r["submit_timeout"]),
            horizon=int(r["horizon"]),
            max_fee_drops=int(r["max_fee_drops"]),
            activation_xrp=Decimal(t["activation_xrp"]),
            trust_limit=Decimal(t["trust_limit"]),
        )

    async def _rpc(self, req, *, t: float | None = None):
        try:
            return await asyncio.wait_for(self.client.request(req), timeout=t or self.rpc_timeout)
        except TimeoutError as e:
            raise LedgerError(f"{req.method} timed out") from e
        except Exception as e:
            raise LedgerError(f"{req.method} failed: {e}") from e

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    async def _account_data(self, address: str, ledger_index: str = "validated") -> dict | None:
        r = await self._rpc(AccountInfo(account=address, ledger_index=ledger_index))
        if r.is_successful():
            return r.result["account_data"]
        if r.result.get("error") == "actNotFound":
            return None
        raise LedgerError(f"account_info {address}: {r.result.get('error_message') or r.result.get('error')}")

    async def is_active(self, address: str) -> bool:
        return await self._account_data(address) is not None

    async def get_balance(self, address: str) -> Decimal:
        data = await self._account_data(address)
        if data is None:
            return Decimal(0)
        return drops_to_xrp(data["Balance"])

    async def _trust_line(self, address: str, token: Token) -> dict | None:
        r = await self._rpc(AccountLines(account=address, peer=token.issuer, ledger_index="validated"))
        if not r.is_successful():
            if r.result.get("error") == "actNotFound":
                return None
            raise LedgerError(f"account_lines {address}: {r.result.get('error')}")
        for line in r.result.get("lines", []):
            if line.get("currency") == token.currency:
                return line
        return None

    async def get_token_balance(self, address: str, token: Token) -> Decimal:
        line = await self._trust_line(address, token)
        if line is None:
            return Decimal(0)
        return Decimal(line["balance"])

    async def network_reference(self) -> int:
        try:
            return await asyncio.wait_for(get_latest_validated_ledger_sequence(client=self.client), timeout=self.rpc_timeout)
        except Exception as e:
            raise LedgerError(f"latest validated ledger unavailable: {e}") from e

    async def get_fee_info(self) -> FeeInfo:
        r = await self._rpc(Fee())
        return FeeInfo.from_fee_result(r.result)

    async def _fee_drops(self) -> int:
        fi = await self.get_fee_info()
        if fi.escalated:
            log.warning(
                "Fee escalated to %s drops (base %s), queue %s/%s",
                fi.minimum_fee, fi.base_fee, fi.current_queue_size, fi.max_queue_size,
            )
        try:
            return fi.fee_drops(self.max_fee_drops)
        except ValueError as e:
            raise TransferError(str(e), engine_result="telINSUF_FEE_P") from e

    async def transfer_fee(self) -> Decimal:
        """XRP the next transfer will burn as its fee."""
        return drops_to_xrp(str(await self._fee_drops()))

    async def _validated_ledger_index(self) -> int:
        ss = await self._rpc(ServerState())
        return ss.result["state"]["validated_ledger"]["seq"]

    # ------------------------------------------------------------------ #
    # Sequence allocation
    # ------------------------------------------------------------------ #

    def _record_for(self, addr: str) -> AccountRecord:
        rec = self.accounts.get(addr)
        if rec is None:
            rec = AccountRecord(lock=asyncio.Lock(), next_seq=None)
            self.accounts[addr] = rec
        return rec

    async def alloc_seq(self, addr: str) -> int:
        rec = self._record_for(addr)
        async with rec.lock:
            if rec.next_seq is None:
                data = await self._account_data(addr, ledger_index="current")
                if data is None:
                    raise TransferError(f"{addr} does not exist on ledger", engine_result="actNotFound")
                rec.next_seq = data["Sequence"]
            s = rec.next_seq
            rec.next_seq += 1
            return s

    async def resync_seq(self, addr: str) -> None:
        """Forget the cached sequence; the next allocation reads it from the ledger."""
        rec = self._record_for(addr)
        async with rec.lock:
            log.debug("Resync sequence for %s (was %s)", addr, rec.next_seq)
            rec.next_seq = None

    # ------------------------------------------------------------------ #
    # Build / sign / submit / wait
    # ------------------------------------------------------------------ #

    async def _sign(self, txn: Transaction, account: Account) -> tuple[str, str, int]:
        created_li = await self._validated_ledger_index()
        lls = created_li + self.horizon
        fee = await self._fee_drops()

        tx = txn.to_xrpl()
        if tx.get("Flags") == 0:
            del tx["Flags"]
        tx["Sequence"] = await self.alloc_seq(account.address)
        tx["Fee"] = str(fee)
        tx["SigningPubKey"] = account.wallet.public_key
        tx["LastLedgerSequence"] = lls

        signing_blob = encode_for_signing(tx)
        to_sign = signing_blob if isinstance(signing_blob, str) else signing_blob.hex()
        tx["TxnSignature"] = sign(to_sign, account.wallet.private_key)
        signed_blob_hex = encode(tx)
        return signed_blob_hex, _txid_from_signed_blob_hex(signed_blob_hex), lls

    async def submit_and_confirm(self, txn: Transaction, account: Account) -> str:
        """Sign with account, submit, and block until validated.

        Returns:
            The transaction hash.

        Raises:
            TransferError: rejected on submit, failed in the ledger, or expired unvalidated.
        """
        blob, tx_hash, lls = await self._sign(txn, account)
        try:
            resp = await asyncio.wait_for(self.client.request(SubmitOnly(tx_blob=blob)), timeout=self.submit_timeout)
        except Exception as e:
            # Never made it to the server, or we can't tell; the sequence may or may not be consumed.
            await self.resync_seq(account.address)
            raise TransferError(f"submit {txn.transaction_type} from {account.address} failed: {e!r}", tx_hash=tx_hash) from e

        er = resp.result.get("engine_result")
        if er in C.RESYNC_RESULTS:
            log.warning("%s: %s seq out of step for %s - resyncing", er, txn.transaction_type, account.address)
            await self.resync_seq(account.address)
            raise TransferError(f"{er} for {account.address}", engine_result=er, tx_hash=tx_hash)
        if isinstance(er, str) and er.startswith(C.REJECT_PREFIXES):
            await self.resync_seq(account.address)
            raise TransferError(f"{txn.transaction_type} rejected: {er}", engine_result=er, tx_hash=tx_hash)

        return await self._wait_until_validated(tx_hash, lls, account.address)

    async def _wait_until_validated(self, tx_hash: str, last_ledger_seq: int, address: str) -> str:
        try:
            async with asyncio.timeout(C.VALIDATION_TIMEOUT):
                while True:
                    try:
                        r = await self._rpc(Tx(transaction=tx_hash))
                    except LedgerError as e:
                        log.debug("tx %s lookup failed: %s", tx_hash, e)
                        r = None
                    result: dict[str, Any] = r.result if r is not None else {}
                    if result.get("validated"):
                        meta_result = result.get("meta", {}).get("TransactionResult")
                        if meta_result != "tesSUCCESS":
                            await self.resync_seq(address)
                            raise TransferError(f"{tx_hash} validated with {meta_result}", engine_result=meta_result, tx_hash=tx_hash)
                        return tx_hash
                    if r is not None and await self._validated_ledger_index() > last_ledger_seq:
                        await self.resync_seq(address)
                        raise TransferError(f"{tx_hash} expired past ledger {last_ledger_seq}", tx_hash=tx_hash)
                    await asyncio.sleep(0.5)
        except TimeoutError as e:
            await self.resync_seq(address)
            raise TransferError(f"{tx_hash} not validated after {C.VALIDATION_TIMEOUT}s", tx_hash=tx_hash) from e

    # ------------------------------------------------------------------ #
    # LedgerClient operations
    # ------------------------------------------------------------------ #

    async def transfer(self, sender: Account, destination: str, amount: Decimal, *, token: Token | None = None) -> str:
        if amount <= 0:
            raise ValueError(f"transfer amount must be positive, got {amount}")
        value = token.amount(amount) if token else xrp_to_drops(amount.quantize(C.DROP, rounding=ROUND_DOWN))
        tx_hash = await self.submit_and_confirm(Payment(account=sender.address, destination=destination, amount=value), sender)
        log.debug("Transferred %s %s from %s to %s (%s)", amount, token or "XRP", sender.address, destination, tx_hash)
        return tx_hash

    async def ensure_token_account(self, owner: Account, token: Token, *, payer: Account) -> str:
        """Open owner's trust line for token, activating owner from payer if needed."""
        if await self._trust_line(owner.address, token) is not None:
            log.debug("Trust line %s already open for %s", token, owner.address)
            return owner.address

        if not await self.is_active(owner.address):
            log.debug("Activating %s with %s XRP from %s", owner.address, self.activation_xrp, payer.address)
            await self.transfer(payer, owner.address, self.activation_xrp)

        trust = TrustSet(account=owner.address, limit_amount=token.amount(self.trust_limit))
        tx_hash = await self.submit_and_confirm(trust, owner)
        log.info("Opened trust line %s for %s (%s)", token.currency, owner.address, tx_hash)
        return owner.address
