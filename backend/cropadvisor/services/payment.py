"""Payment coordination against the CropAdvisor ledger contract.

The contract charges a fixed fee per analysis and emits ``PaymentReceived``
carrying the analysis id that correlates the on-chain payment with the
off-chain analysis record.  Submitting the payment is irreversible, so the
id extraction is the only way back to a usable result and a missing event is
reported on its own.
"""

from __future__ import annotations

import logging
from typing import Any

from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception
from web3.logs import DISCARD

from cropadvisor.errors import (
    AnalysisError,
    EventNotFound,
    InsufficientFunds,
    InvalidAddress,
    InvalidInput,
    LedgerUnavailable,
    NotFound,
    PaymentFailed,
    PaymentUnsupported,
    SignatureRejected,
)
from cropadvisor.schemas.analysis import PaymentReceipt
from cropadvisor.services.fingerprint import FINGERPRINT_HEX_LENGTH

logger = logging.getLogger(__name__)

PAYMENT_EVENT = "PaymentReceived"

CROP_ADVISOR_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "analysisPrice",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "requestAnalysis",
        "stateMutability": "payable",
        "inputs": [{"name": "imageHash", "type": "bytes32"}],
        "outputs": [{"name": "analysisId", "type": "uint256"}],
    },
    {
        "type": "event",
        "name": PAYMENT_EVENT,
        "anonymous": False,
        "inputs": [
            {"name": "analysisId", "type": "uint256", "indexed": True},
            {"name": "user", "type": "address", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
            {"name": "imageHash", "type": "bytes32", "indexed": False},
        ],
    },
]

_INSUFFICIENT_FUNDS_MARKERS = ("insufficient funds",)
_USER_REJECTED_MARKERS = ("user denied", "user rejected", "rejected by user")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _hex(value: Any) -> str:
    """Render a tx hash or bytes value as a 0x-prefixed hex string."""
    if isinstance(value, str):
        return value if value.startswith("0x") else f"0x{value}"
    return Web3.to_hex(value)


def fingerprint_to_bytes32(fingerprint: str) -> bytes:
    raw = fingerprint[2:] if fingerprint.startswith("0x") else fingerprint
    if len(raw) != FINGERPRINT_HEX_LENGTH:
        raise InvalidInput(f"Image fingerprint must be {FINGERPRINT_HEX_LENGTH} hex characters.")
    try:
        return bytes.fromhex(raw)
    except ValueError as exc:
        raise InvalidInput("Image fingerprint is not valid hex.") from exc


def fingerprint_from_bytes32(value: Any) -> str:
    return _hex(value)[2:].lower()


def normalize_owner(address: str) -> str:
    """Canonical form of a wallet address for storage and lookup (lowercase hex)."""
    if not address or not Web3.is_address(address):
        raise InvalidAddress("Please connect a valid Ethereum wallet.")
    return address.lower()


def classify_ledger_error(exc: Exception) -> AnalysisError:
    """Translate a web3 / RPC exception into the payment error taxonomy."""
    message = str(exc)
    lowered = message.lower()
    if any(marker in lowered for marker in _INSUFFICIENT_FUNDS_MARKERS):
        return InsufficientFunds("Insufficient balance for the analysis fee and gas.")
    if any(marker in lowered for marker in _USER_REJECTED_MARKERS):
        return SignatureRejected("Transaction was cancelled by the user.")
    if isinstance(exc, ContractLogicError):
        return PaymentFailed(f"Ledger contract rejected the payment: {message}")
    if isinstance(exc, TimeExhausted):
        return LedgerUnavailable(
            "Timed out waiting for the payment receipt; the payment may still settle."
        )
    return LedgerUnavailable(f"Ledger request failed: {message}")


def extract_correlation_id(contract: Any, receipt: Any) -> tuple[str, dict[str, Any]]:
    """Return the analysis id and event args of ``PaymentReceived`` in *receipt*.

    Raises ``EventNotFound`` when the receipt carries no such event.
    """
    tx_hash = _hex(receipt["transactionHash"])
    events = getattr(contract.events, PAYMENT_EVENT)().process_receipt(receipt, errors=DISCARD)
    for event in events:
        args = event["args"]
        if "analysisId" in args and args["analysisId"] is not None:
            return str(args["analysisId"]), dict(args)
    logger.error(
        "Payment %s succeeded but emitted no %s event; funds spent without an analysis id.",
        tx_hash, PAYMENT_EVENT,
    )
    raise EventNotFound(
        f"Payment {tx_hash} succeeded but no {PAYMENT_EVENT} event was found. "
        "Contact support with this transaction hash.",
        tx_hash=tx_hash,
    )


# ---------------------------------------------------------------------------
# Coordinators
# ---------------------------------------------------------------------------

class LedgerPaymentCoordinator:
    """Pays for analyses through the ledger contract and reads back the id."""

    def __init__(
        self,
        w3: Any,
        contract_address: str,
        *,
        gas_limit: int = 300_000,
        receipt_timeout: float = 120.0,
    ) -> None:
        self.w3 = w3
        self.contract = w3.eth.contract(
            address=Web3.to_checksum_address(contract_address), abi=CROP_ADVISOR_ABI,
        )
        self.gas_limit = gas_limit
        self.receipt_timeout = receipt_timeout

    @classmethod
    def from_rpc(cls, rpc_url: str, contract_address: str, **kwargs: Any) -> LedgerPaymentCoordinator:
        w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 30}))
        return cls(w3, contract_address, **kwargs)

    def analysis_price(self) -> int:
        try:
            return int(self.contract.functions.analysisPrice().call())
        except (Web3Exception, ValueError, OSError) as exc:
            raise classify_ledger_error(exc) from exc

    def request_analysis(self, owner: str, fingerprint: str) -> PaymentReceipt:
        """Pay the analysis fee from *owner*, committing *fingerprint* on-chain."""
        sender = Web3.to_checksum_address(normalize_owner(owner))
        image_hash = fingerprint_to_bytes32(fingerprint)

        price = self.analysis_price()
        logger.info("Submitting payment of %d wei from %s for image %s", price, sender, fingerprint)
        try:
            tx_hash = self.contract.functions.requestAnalysis(image_hash).transact(
                {"from": sender, "value": price, "gas": self.gas_limit}
            )
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout,
            )
        except (Web3Exception, ValueError, OSError) as exc:
            raise classify_ledger_error(exc) from exc
        return self._receipt_to_payment(receipt)

    def confirm_payment(self, tx_hash: str) -> PaymentReceipt:
        """Read back an already mined payment. Safe to call repeatedly."""
        if not tx_hash:
            raise InvalidInput("Transaction hash is required.")
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound as exc:
            raise NotFound(f"Payment transaction {tx_hash} not found.") from exc
        except (Web3Exception, ValueError, OSError) as exc:
            raise classify_ledger_error(exc) from exc
        return self._receipt_to_payment(receipt)

    def close(self) -> None:
        """Drop the HTTP session held by the provider, if any."""
        provider = getattr(self.w3, "provider", None)
        disconnect = getattr(provider, "disconnect", None)
        if callable(disconnect):
            disconnect()
        logger.info("Ledger connection closed.")

    def _receipt_to_payment(self, receipt: Any) -> PaymentReceipt:
        tx_hash = _hex(receipt["transactionHash"])
        if receipt.get("status", 1) != 1:
            raise PaymentFailed(f"Payment transaction {tx_hash} reverted.")
        correlation_id, args = extract_correlation_id(self.contract, receipt)
        logger.info("Payment %s confirmed, analysis id %s", tx_hash, correlation_id)
        return PaymentReceipt(
            correlation_id=correlation_id,
            owner=str(args.get("user", "")),
            image_fingerprint=fingerprint_from_bytes32(args.get("imageHash", b"")),
            tx_hash=tx_hash,
            amount_wei=int(args.get("amount", 0)),
        )


class GaslessPaymentCoordinator:
    """Placeholder for sponsored (gasless) payments.

    Shares the ``LedgerPaymentCoordinator`` interface so it can be swapped in
    without touching callers; no relaying protocol exists yet.
    """

    _MESSAGE = "Gasless payments are not implemented yet."

    def analysis_price(self) -> int:
        raise PaymentUnsupported(self._MESSAGE)

    def request_analysis(self, owner: str, fingerprint: str) -> PaymentReceipt:
        raise PaymentUnsupported(self._MESSAGE)

    def confirm_payment(self, tx_hash: str) -> PaymentReceipt:
        raise PaymentUnsupported(self._MESSAGE)

    def close(self) -> None:
        pass
