"""
Error taxonomy for deposit reconciliation and automatic refunds.

Only RefundSubmissionError (after the attempt cap) and store failures ever surface to
operators; the rest describe idempotent or retryable conditions handled inside a cycle.
"""


class ReconciliationError(Exception):
    """Base class for reconciliation errors"""

    pass


class TransientLedgerError(ReconciliationError):
    """Network, timeout, rate limit or 5xx from a ledger query or submission; retried next cycle"""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class LedgerQuotaExceededError(TransientLedgerError):
    """Ledger API returned 402 (quota exhausted / payment required)"""

    pass


class DuplicateObservationError(ReconciliationError):
    """A (tx_hash, output_index) that is already recorded was ingested again"""

    def __init__(self, tx_hash: str, output_index: int, record=None):
        super().__init__(f"Deposit {tx_hash}#{output_index} already recorded")
        self.tx_hash = tx_hash
        self.output_index = output_index
        self.record = record


class InvalidAmountError(ReconciliationError):
    """Transfer amount differs from the required deposit amount"""

    def __init__(self, amount: int, required_amount: int):
        super().__init__(f"Amount {amount} does not match required deposit {required_amount}")
        self.amount = amount
        self.required_amount = required_amount


class RefundSubmissionError(ReconciliationError):
    """Refund transaction was rejected; it never reached the ledger"""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class SubmissionMayHaveLandedError(RefundSubmissionError):
    """Outcome of a submission is unknown; the transaction may already be on chain"""

    pass


class AlreadyRefundedError(ReconciliationError):
    """Claim race lost: another dispatcher already owns or finished this refund"""

    def __init__(self, tx_hash: str, output_index: int, current_status: str = None):
        super().__init__(
            f"Deposit {tx_hash}#{output_index} already claimed (status={current_status})"
        )
        self.tx_hash = tx_hash
        self.output_index = output_index
        self.current_status = current_status
