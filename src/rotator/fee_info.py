"""Fee escalation snapshot used when pricing worker and admin payments."""

from dataclasses import dataclass


@dataclass
class FeeInfo:
    """Current fee escalation state from rippled fee command.

    All fee values are in drops. A full queue shows up as minimum_fee > base_fee.
    """

    expected_ledger_size: int
    current_queue_size: int
    max_queue_size: int
    base_fee: int  # drops
    minimum_fee: int  # drops
    open_ledger_fee: int  # drops
    ledger_current_index: int

    @classmethod
    def from_fee_result(cls, result: dict) -> "FeeInfo":
        drops = result["drops"]
        return cls(
            expected_ledger_size=int(result["expected_ledger_size"]),
            current_queue_size=int(result["current_queue_size"]),
            max_queue_size=int(result["max_queue_size"]),
            base_fee=int(drops["base_fee"]),
            minimum_fee=int(drops["minimum_fee"]),
            open_ledger_fee=int(drops["open_ledger_fee"]),
            ledger_current_index=int(result["ledger_current_index"]),
        )

    @property
    def escalated(self) -> bool:
        return self.minimum_fee > self.base_fee

    def fee_drops(self, cap: int) -> int:
        """Fee to get into the queue, refusing to pay more than cap.

        Raises:
            ValueError: the queue is so full that entering it costs more than cap.
        """
        if self.minimum_fee > cap:
            raise ValueError(
                f"Fee too high ({self.minimum_fee} drops > {cap} max) - queue is "
                f"{self.current_queue_size}/{self.max_queue_size}, refusing to drain accounts."
            )
        return self.minimum_fee
