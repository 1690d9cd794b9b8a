"""Ledger-backed store: every transition is also one LandRegistry contract call.

The database stays the read model (fees, documents, history). The contract
is keyed by parcel number and holds one pending-transfer slot per parcel,
guarded by on-chain role grants. Transactions are signed by the registry's
relay account, which holds the official role on the contract; end users are
identified on-chain by their registered wallet addresses.

The registry never holds user keys, so the deployed contract must accept
every mutating call from the relay (LAND_REGISTRY_ABI below):
- requestTransfer(landId, fromOwner, newOwner, amount), official-gated,
  reverting unless fromOwner is the recorded owner and the slot is empty
- cancelTransfer(landId), official-gated, clearing the pending slot
- registerLand, approveTransfer and rejectTransfer, official-gated
- getPendingTransfer(landId), returning a zero fromOwner for an empty slot
The owner-signed LandRegistry contract (requestTransfer(landId, newOwner,
amount) under onlyLandOwner, no cancel) cannot back this store.

A transition is submitted and its receipt awaited inside the database unit of
work, so:
- submission failure (node down, nonce clash) -> StorageFailure, retryable
- revert, failed receipt or receipt timeout -> LedgerTransactionFailed,
  terminal for this attempt
and in both cases the database transaction is rolled back.
"""

import logging
import os
from dataclasses import dataclass
from decimal import Decimal

from dotenv import load_dotenv
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from .errors import Conflict, LedgerTransactionFailed, StorageFailure, ValidationError
from .models import Parcel, Transfer
from .stores import RegistryStore, Transition

load_dotenv()

logger = logging.getLogger(__name__)

BLOCKCHAIN_RPC_URL = os.getenv("BLOCKCHAIN_RPC_URL", "http://127.0.0.1:8545")
LAND_REGISTRY_CONTRACT = os.getenv("LAND_REGISTRY_CONTRACT", "")
BLOCKCHAIN_PRIVATE_KEY = os.getenv("BLOCKCHAIN_PRIVATE_KEY", "")
LEDGER_RECEIPT_TIMEOUT = float(os.getenv("LEDGER_RECEIPT_TIMEOUT", "120"))

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Coordinates are stored on-chain as integers (degrees * 1e6)
COORDINATE_SCALE = Decimal("1000000")


def _fn(name: str, inputs: list[tuple[str, str]], outputs: list[tuple[str, str]] | None = None,
        mutability: str = "nonpayable") -> dict:
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in (outputs or [])],
    }


LAND_REGISTRY_ABI = [
    _fn("registerLand", [
        ("landId", "string"), ("owner", "address"), ("latitude", "int256"),
        ("longitude", "int256"), ("area", "uint256"), ("documentHash", "string"),
        ("physicalAddress", "string"), ("landType", "string"),
    ]),
    _fn("requestTransfer", [
        ("landId", "string"), ("fromOwner", "address"), ("newOwner", "address"), ("amount", "uint256"),
    ]),
    _fn("approveTransfer", [("landId", "string")]),
    _fn("rejectTransfer", [("landId", "string"), ("reason", "string")]),
    _fn("cancelTransfer", [("landId", "string")]),
    {
        "type": "function",
        "name": "getPendingTransfer",
        "stateMutability": "view",
        "inputs": [{"name": "landId", "type": "string"}],
        "outputs": [{
            "name": "",
            "type": "tuple",
            "components": [
                {"name": "landId", "type": "string"},
                {"name": "fromOwner", "type": "address"},
                {"name": "toOwner", "type": "address"},
                {"name": "requestDate", "type": "uint256"},
                {"name": "amount", "type": "uint256"},
            ],
        }],
    },
]


@dataclass(frozen=True)
class LedgerReceipt:
    """A confirmed ledger transaction."""

    tx_hash: str
    block_number: int | None
    gas_used: int | None


class LedgerClient:
    """Thin wrapper over the LandRegistry contract."""

    def __init__(self, web3: Web3, contract_address: str, private_key: str,
                 receipt_timeout: float = LEDGER_RECEIPT_TIMEOUT):
        self.web3 = web3
        self.account = web3.eth.account.from_key(private_key)
        self.contract = web3.eth.contract(
            address=Web3.to_checksum_address(contract_address), abi=LAND_REGISTRY_ABI
        )
        self.receipt_timeout = receipt_timeout

    @classmethod
    def from_env(cls) -> "LedgerClient":
        if not LAND_REGISTRY_CONTRACT or not BLOCKCHAIN_PRIVATE_KEY:
            raise RuntimeError(
                "Ledger backend requires LAND_REGISTRY_CONTRACT and BLOCKCHAIN_PRIVATE_KEY"
            )
        web3 = Web3(Web3.HTTPProvider(BLOCKCHAIN_RPC_URL))
        logger.info(f"Ledger client connected to {BLOCKCHAIN_RPC_URL} ({LAND_REGISTRY_CONTRACT})")
        return cls(web3, LAND_REGISTRY_CONTRACT, BLOCKCHAIN_PRIVATE_KEY)

    # --- writes -------------------------------------------------------------

    def register_land(self, land_id: str, owner: str, latitude: Decimal, longitude: Decimal,
                      area: Decimal, document_hash: str, physical_address: str,
                      land_type: str) -> LedgerReceipt:
        return self._transact(
            "registerLand",
            land_id,
            Web3.to_checksum_address(owner),
            int(Decimal(latitude) * COORDINATE_SCALE),
            int(Decimal(longitude) * COORDINATE_SCALE),
            int(area),
            document_hash,
            physical_address,
            land_type,
        )

    def request_transfer(self, land_id: str, from_owner: str, new_owner: str,
                         amount: Decimal | None) -> LedgerReceipt:
        amount_wei = Web3.to_wei(amount or 0, "ether")
        return self._transact(
            "requestTransfer",
            land_id,
            Web3.to_checksum_address(from_owner),
            Web3.to_checksum_address(new_owner),
            amount_wei,
        )

    def approve_transfer(self, land_id: str) -> LedgerReceipt:
        return self._transact("approveTransfer", land_id)

    def reject_transfer(self, land_id: str, reason: str) -> LedgerReceipt:
        return self._transact("rejectTransfer", land_id, reason)

    def cancel_transfer(self, land_id: str) -> LedgerReceipt:
        return self._transact("cancelTransfer", land_id)

    # --- reads --------------------------------------------------------------

    def pending_transfer(self, land_id: str) -> dict | None:
        try:
            result = self.contract.functions.getPendingTransfer(land_id).call()
        except (Web3Exception, ConnectionError) as e:
            raise StorageFailure("Ledger is temporarily unavailable") from e

        _, from_owner, to_owner, request_date, amount = result
        if from_owner == ZERO_ADDRESS:
            return None
        return {
            "land_id": land_id,
            "from_owner": from_owner,
            "to_owner": to_owner,
            "request_date": int(request_date),
            "amount": Web3.from_wei(amount, "ether"),
        }

    def _transact(self, fn_name: str, *args) -> LedgerReceipt:
        contract_function = getattr(self.contract.functions, fn_name)(*args)

        try:
            nonce = self.web3.eth.get_transaction_count(self.account.address)
            txn = contract_function.build_transaction({
                "from": self.account.address,
                "nonce": nonce,
            })
            signed = self.account.sign_transaction(txn)
            tx_hash = self.web3.eth.send_raw_transaction(signed.raw_transaction)
        except ContractLogicError as e:
            # Gas estimation replays the call; a revert here is the contract refusing it
            logger.warning(f"Ledger rejected {fn_name}: {e}")
            raise LedgerTransactionFailed(f"Ledger rejected {fn_name}") from e
        except (Web3Exception, ConnectionError, ValueError) as e:
            logger.warning(f"Ledger submission failed for {fn_name}: {e}")
            raise StorageFailure(f"Ledger submission failed for {fn_name}", retryable=True) from e

        tx_hex = Web3.to_hex(tx_hash)
        logger.info(f"Ledger transaction sent: {fn_name} {tx_hex}")

        try:
            receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except TimeExhausted as e:
            raise LedgerTransactionFailed(f"{fn_name} was not confirmed in time", tx_hash=tx_hex) from e
        except (Web3Exception, ConnectionError) as e:
            raise LedgerTransactionFailed(f"{fn_name} confirmation failed", tx_hash=tx_hex) from e

        if receipt["status"] != 1:
            logger.error(f"Ledger transaction reverted: {fn_name} {tx_hex}")
            raise LedgerTransactionFailed(f"{fn_name} reverted on-chain", tx_hash=tx_hex)

        logger.info(f"Ledger transaction confirmed: {fn_name} {tx_hex} block={receipt.get('blockNumber')}")
        return LedgerReceipt(
            tx_hash=tx_hex,
            block_number=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed"),
        )


class LedgerStore(RegistryStore):
    """Database read model plus one contract call per transition."""

    def __init__(self, session, ledger: LedgerClient):
        super().__init__(session)
        self.ledger = ledger

    def anchor_transition(self, transition: Transition, parcel: Parcel,
                          transfer: Transfer | None = None, **details) -> str | None:
        land_id = parcel.parcel_number

        if transition == Transition.REGISTER:
            receipt = self.ledger.register_land(
                land_id,
                _wallet(parcel.owner, "Owner"),
                parcel.lat,
                parcel.lng,
                parcel.area,
                details.get("document_hash", ""),
                parcel.address,
                parcel.land_type.value,
            )
            parcel.blockchain_tx_hash = receipt.tx_hash
            return receipt.tx_hash

        if transition == Transition.INITIATE:
            if self.ledger.pending_transfer(land_id) is not None:
                raise Conflict(f"Parcel {land_id} already has a pending transfer on the ledger")
            receipt = self.ledger.request_transfer(
                land_id,
                _wallet(transfer.from_owner, "Owner"),
                _wallet(transfer.to_owner, "Recipient"),
                transfer.sale_price,
            )
        elif transition == Transition.APPROVE:
            receipt = self.ledger.approve_transfer(land_id)
        elif transition == Transition.REJECT:
            receipt = self.ledger.reject_transfer(land_id, transfer.rejection_reason or "")
        elif transition == Transition.CANCEL:
            receipt = self.ledger.cancel_transfer(land_id)
        else:
            raise ValueError(f"Unsupported transition {transition!r}")

        transfer.blockchain_tx_hash = receipt.tx_hash
        return receipt.tx_hash


def _wallet(user, label: str) -> str:
    if user is None or not user.wallet_address:
        raise ValidationError(f"{label} has no registered wallet address")
    return user.wallet_address
