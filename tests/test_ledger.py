import unittest
from decimal import Decimal

from xrpl.core.binarycodec import decode
from xrpl.models.requests import AccountInfo, AccountLines, Fee, ServerState, SubmitOnly, Tx
from xrpl.models.response import Response, ResponseStatus

from rotator.accounts import AccountFactory, admin_from_seed
from rotator.fee_info import FeeInfo
from rotator.ledger import TransferError, XRPLLedgerClient

from fakes import ADMIN_SEED, ISSUER, TOKEN


def ok(result: dict) -> Response:
    return Response(status=ResponseStatus.SUCCESS, result=result)


def err(error: str) -> Response:
    return Response(status=ResponseStatus.ERROR, result={"error": error})


class ScriptedRpc:
    """Answers the handful of rippled requests the client makes."""

    def __init__(self):
        self.accounts: dict[str, dict] = {}
        self.lines: dict[str, list[dict]] = {}
        self.engine_result = "tesSUCCESS"
        self.minimum_fee = 10
        self.submitted: list[dict] = []

    async def request(self, req):
        if isinstance(req, AccountInfo):
            data = self.accounts.get(req.account)
            return ok({"account_data": data}) if data else err("actNotFound")
        if isinstance(req, AccountLines):
            if req.account not in self.accounts:
                return err("actNotFound")
            return ok({"lines": self.lines.get(req.account, [])})
        if isinstance(req, ServerState):
            return ok({"state": {"validated_ledger": {"seq": 100}}})
        if isinstance(req, Fee):
            return ok({
                "expected_ledger_size": "25",
                "current_queue_size": "0",
                "max_queue_size": "2000",
                "drops": {"base_fee": "10", "minimum_fee": str(self.minimum_fee), "open_ledger_fee": "10"},
                "ledger_current_index": 101,
            })
        if isinstance(req, SubmitOnly):
            tx = decode(req.tx_blob)
            self.submitted.append(tx)
            if self.engine_result == "tesSUCCESS" and tx["TransactionType"] == "Payment" and isinstance(tx["Amount"], str):
                self.accounts.setdefault(tx["Destination"], {"Balance": tx["Amount"], "Sequence": 7})
            return ok({"engine_result": self.engine_result})
        if isinstance(req, Tx):
            return ok({"validated": True, "meta": {"TransactionResult": "tesSUCCESS"}})
        raise AssertionError(f"unexpected request {req}")


class TestXRPLLedgerClient(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.rpc = ScriptedRpc()
        self.ledger = XRPLLedgerClient(self.rpc, activation_xrp=Decimal("1.5"))
        self.admin = admin_from_seed(ADMIN_SEED)
        self.rpc.accounts[self.admin.address] = {"Balance": "12500000", "Sequence": 40}

    async def test_balances(self):
        self.assertEqual(await self.ledger.get_balance(self.admin.address), Decimal("12.5"))
        self.assertEqual(await self.ledger.get_balance("rrrrrrrrrrrrrrrrrrrrBZbvji"), 0)

        self.rpc.lines[self.admin.address] = [
            {"account": ISSUER, "currency": "EUR", "balance": "3"},
            {"account": ISSUER, "currency": "USD", "balance": "42.5"},
        ]
        self.assertEqual(await self.ledger.get_token_balance(self.admin.address, TOKEN), Decimal("42.5"))

    async def test_transfer_signs_with_consecutive_sequences(self):
        dest = AccountFactory().generate(1)[0].address
        h1 = await self.ledger.transfer(self.admin, dest, Decimal("0.1234567"))
        h2 = await self.ledger.transfer(self.admin, dest, Decimal("1"))

        self.assertEqual(len(h1), 64)
        self.assertNotEqual(h1, h2)
        first, second = self.rpc.submitted
        self.assertEqual((first["Sequence"], second["Sequence"]), (40, 41))
        self.assertEqual(first["Amount"], "123456")  # rounded down to whole drops
        self.assertEqual(first["LastLedgerSequence"], 100 + self.ledger.horizon)
        self.assertEqual(first["Fee"], "10")

    async def test_token_transfer_amount(self):
        dest = AccountFactory().generate(1)[0].address
        await self.ledger.transfer(self.admin, dest, Decimal("2.5"), token=TOKEN)
        amount = self.rpc.submitted[0]["Amount"]
        self.assertEqual((amount["currency"], amount["issuer"], amount["value"]), ("USD", ISSUER, "2.5"))

    async def test_past_sequence_resyncs(self):
        self.rpc.engine_result = "tefPAST_SEQ"
        with self.assertRaises(TransferError) as cm:
            await self.ledger.transfer(self.admin, ISSUER, Decimal(1))
        self.assertEqual(cm.exception.engine_result, "tefPAST_SEQ")
        self.assertIsNone(self.ledger.accounts[self.admin.address].next_seq)

    async def test_rejections_raise(self):
        self.rpc.engine_result = "tecUNFUNDED_PAYMENT"
        with self.assertRaises(TransferError):
            await self.ledger.transfer(self.admin, ISSUER, Decimal(1))

    async def test_non_positive_amount(self):
        with self.assertRaises(ValueError):
            await self.ledger.transfer(self.admin, ISSUER, Decimal(0))
        self.assertEqual(self.rpc.submitted, [])

    async def test_fee_over_cap_is_a_transfer_error(self):
        self.rpc.minimum_fee = self.ledger.max_fee_drops + 1
        with self.assertRaises(TransferError):
            await self.ledger.transfer(self.admin, ISSUER, Decimal(1))
        self.assertEqual(self.rpc.submitted, [])

    async def test_transfer_fee_follows_the_queue(self):
        self.assertEqual(await self.ledger.transfer_fee(), Decimal("0.00001"))
        self.rpc.minimum_fee = 256
        self.assertEqual(await self.ledger.transfer_fee(), Decimal("0.000256"))
        self.rpc.minimum_fee = self.ledger.max_fee_drops + 1
        with self.assertRaises(TransferError):
            await self.ledger.transfer_fee()

    async def test_ensure_token_account_activates_then_trusts(self):
        owner = AccountFactory().generate(1)[0]
        await self.ledger.ensure_token_account(owner, TOKEN, payer=self.admin)

        payment, trust = self.rpc.submitted
        self.assertEqual(payment["TransactionType"], "Payment")
        self.assertEqual(payment["Account"], self.admin.address)
        self.assertEqual(payment["Amount"], "1500000")
        self.assertEqual(trust["TransactionType"], "TrustSet")
        self.assertEqual(trust["Account"], owner.address)
        self.assertEqual(trust["LimitAmount"]["currency"], "USD")

    async def test_existing_trust_line_is_left_alone(self):
        owner = AccountFactory().generate(1)[0]
        self.rpc.accounts[owner.address] = {"Balance": "5000000", "Sequence": 3}
        self.rpc.lines[owner.address] = [{"account": ISSUER, "currency": "USD", "balance": "0"}]
        await self.ledger.ensure_token_account(owner, TOKEN, payer=self.admin)
        self.assertEqual(self.rpc.submitted, [])


class TestFeeInfo(unittest.TestCase):
    def result(self, minimum_fee):
        return {
            "expected_ledger_size": "25",
            "current_queue_size": "30",
            "max_queue_size": "2000",
            "drops": {"base_fee": "10", "minimum_fee": str(minimum_fee), "open_ledger_fee": "500"},
            "ledger_current_index": 7,
        }

    def test_escalation(self):
        self.assertFalse(FeeInfo.from_fee_result(self.result(10)).escalated)
        fi = FeeInfo.from_fee_result(self.result(256))
        self.assertTrue(fi.escalated)
        self.assertEqual(fi.fee_drops(1000), 256)
        with self.assertRaises(ValueError):
            fi.fee_drops(100)


if __name__ == "__main__":
    unittest.main()
