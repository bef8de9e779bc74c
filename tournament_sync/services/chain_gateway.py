"""
Chain Gateway

Wraps every read and write against the tournament contract behind plain
async request/response operations:

- get_current_week: the week the contract believes is active
- get_player_record: a player's stored score for a week
- submit_score_batch: write absolute weekly totals for a batch of players
- confirm_transaction: wait for a submitted transaction to be mined
- verify_signer: compare the configured key with the contract's authorized writer
- start_new_week: advance the contract's week counter
- verify_ticket_payment: check a player's ticket purchase transaction

Failures are translated into ChainUnavailable (transient), ChainRevert
(business rule) and AuthorizationError (signer drift). Writes are gated on
verify_signer so a mismatched key never spends gas on a call that will revert.
Nonce allocation is centralized here; callers never manage nonces.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Tuple

import aiohttp
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception

from tournament_sync.config import Config
from tournament_sync.constants import ChainConstants
from tournament_sync.utils.logger import setup_logger
from tournament_sync.utils.sync_exceptions import (
    AuthorizationError, ChainNotConfiguredError, ChainRevert, ChainUnavailable, InvalidPlayerAddress
)

logger = setup_logger(__name__)

TOURNAMENT_ABI = [
    {
        "inputs": [],
        "name": "currentWeek",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [
            {"internalType": "uint256", "name": "week", "type": "uint256"},
            {"internalType": "address", "name": "player", "type": "address"}
        ],
        "name": "getPlayerScore",
        "outputs": [
            {"internalType": "uint256", "name": "score", "type": "uint256"},
            {"internalType": "bool", "name": "present", "type": "bool"}
        ],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [
            {"internalType": "uint256", "name": "week", "type": "uint256"},
            {"internalType": "address[]", "name": "players", "type": "address[]"},
            {"internalType": "uint256[]", "name": "scores", "type": "uint256[]"}
        ],
        "name": "setScores",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "gameVault",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "startNewWeek",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    }
]

TRANSIENT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError)


class ConfirmationStatus(Enum):
    SUCCESS = "success"
    REVERTED = "reverted"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class PlayerRecord:
    score: int
    present: bool


@dataclass(frozen=True)
class Confirmation:
    status: ConfirmationStatus
    block_number: Optional[int] = None


@dataclass(frozen=True)
class SignerCheck:
    configured_address: str
    contract_authorized_address: str
    is_match: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            'configuredAddress': self.configured_address,
            'contractAuthorizedAddress': self.contract_authorized_address,
            'isMatch': self.is_match,
        }


def _selector(signature: str) -> str:
    return Web3.to_hex(Web3.keccak(text=signature))[:10]


KNOWN_ERROR_SELECTORS = {_selector(sig): sig.rstrip('()') for sig in ChainConstants.KNOWN_ERRORS}


def to_checksum(player: str) -> str:
    """Checksummed form of a wallet address. Raises InvalidPlayerAddress for anything else."""
    if not isinstance(player, str) or not Web3.is_address(player.lower()):
        raise InvalidPlayerAddress([player])
    return Web3.to_checksum_address(player.lower())


def decode_revert_reason(error: ContractLogicError) -> str:
    """Best-effort human-readable reason for a contract revert."""
    data = getattr(error, 'data', None)
    if isinstance(data, str) and data.startswith('0x') and len(data) >= 10:
        name = KNOWN_ERROR_SELECTORS.get(data[:10].lower())
        if name:
            return name
    message = str(getattr(error, 'message', None) or error)
    for prefix in ('execution reverted: ', 'execution reverted'):
        if message.startswith(prefix):
            message = message[len(prefix):]
            break
    message = message.strip()
    name = KNOWN_ERROR_SELECTORS.get(message[:10].lower()) if message.startswith('0x') else None
    return name or message or 'execution reverted'


class ChainGateway:
    """Async gateway to the tournament contract over web3.py."""

    def __init__(self, w3: AsyncWeb3, contract_address: str, private_key: str,
                 chain_id: Optional[int] = None, abi: Optional[list] = None):
        self.w3 = w3
        self.contract = w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=abi or TOURNAMENT_ABI
        )
        self.account = w3.eth.account.from_key(private_key)
        self.chain_id = chain_id
        self._nonce_lock = asyncio.Lock()
        self._next_nonce: Optional[int] = None

    @classmethod
    def from_config(cls) -> 'ChainGateway':
        """Build the gateway from environment configuration."""
        missing = [name for name, value in (
            ('RPC_URL', Config.RPC_URL),
            ('PRIVATE_KEY', Config.PRIVATE_KEY),
            ('TOURNAMENT_CONTRACT_ADDRESS', Config.TOURNAMENT_CONTRACT_ADDRESS),
        ) if not value]
        if missing:
            raise ChainNotConfiguredError(missing)

        w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
            Config.RPC_URL,
            request_kwargs={'timeout': Config.RPC_REQUEST_TIMEOUT_SECONDS}
        ))
        gateway = cls(w3, Config.TOURNAMENT_CONTRACT_ADDRESS, Config.get_private_key(), Config.CHAIN_ID)
        logger.info(f"Chain gateway initialized with wallet {gateway.address}")
        logger.info(f"Tournament contract: {gateway.contract.address}")
        return gateway

    @property
    def address(self) -> str:
        return self.account.address

    async def _call(self, operation: str, func: Callable[[], Awaitable[Any]]) -> Any:
        """Run one RPC interaction, translating web3/transport errors."""
        try:
            return await func()
        except ContractLogicError as e:
            reason = decode_revert_reason(e)
            logger.error(f"{operation} reverted: {reason}")
            raise ChainRevert(operation, reason) from e
        except TRANSIENT_ERRORS as e:
            logger.warning(f"{operation} failed (transient): {e!r}")
            raise ChainUnavailable(operation, repr(e)) from e
        except Web3Exception as e:
            logger.warning(f"{operation} failed: {e!r}")
            raise ChainUnavailable(operation, repr(e)) from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_current_week(self) -> int:
        week = await self._call('currentWeek', self.contract.functions.currentWeek().call)
        return int(week)

    async def get_player_record(self, player: str, week: int) -> PlayerRecord:
        fn = self.contract.functions.getPlayerScore(week, to_checksum(player))
        score, present = await self._call('getPlayerScore', fn.call)
        return PlayerRecord(score=int(score), present=bool(present))

    async def verify_signer(self) -> SignerCheck:
        authorized = await self._call('gameVault', self.contract.functions.gameVault().call)
        authorized = str(authorized)
        is_match = self.address.lower() == authorized.lower()
        if is_match:
            logger.debug(f"Signer {self.address} is the contract's authorized writer")
        else:
            logger.error(f"Signer mismatch: server {self.address}, contract trusts {authorized}")
        return SignerCheck(
            configured_address=self.address,
            contract_authorized_address=authorized,
            is_match=is_match
        )

    async def verify_ticket_payment(self, tx_hash: str, player: str, min_value: int) -> Optional[str]:
        """
        Check that `tx_hash` is a successful payment of at least `min_value` wei
        from `player` to the tournament contract.

        Returns:
            None if the ticket checks out, otherwise the reason it was rejected
        """
        try:
            tx = await self._call('getTransaction', lambda: self.w3.eth.get_transaction(tx_hash))
            receipt = await self._call('getTransactionReceipt', lambda: self.w3.eth.get_transaction_receipt(tx_hash))
        except ChainUnavailable as e:
            if isinstance(e.__cause__, TransactionNotFound):
                return "transaction not found"
            raise

        sender = str(tx.get('from') or '')
        recipient = str(tx.get('to') or '')
        value = int(tx.get('value') or 0)
        if receipt.get('status') != 1:
            return "transaction failed on-chain"
        if sender.lower() != player.lower():
            return f"sent by {sender}, not {player}"
        if recipient.lower() != self.contract.address.lower():
            return f"paid to {recipient}, not the tournament contract"
        if value < min_value:
            return f"value {value} is below the ticket price {min_value}"
        return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _ensure_authorized(self) -> None:
        check = await self.verify_signer()
        if not check.is_match:
            raise AuthorizationError(check.configured_address, check.contract_authorized_address)

    async def _allocate_nonce(self) -> int:
        pending = await self._call(
            'getTransactionCount',
            lambda: self.w3.eth.get_transaction_count(self.account.address, 'pending')
        )
        if self._next_nonce is None or pending > self._next_nonce:
            self._next_nonce = pending
        nonce = self._next_nonce
        self._next_nonce += 1
        return nonce

    async def _send(self, operation: str, fn) -> str:
        """Build, sign and broadcast a contract call. Gas estimation surfaces reverts first."""
        await self._ensure_authorized()
        async with self._nonce_lock:
            nonce = await self._allocate_nonce()
            tx_params = {'from': self.account.address, 'nonce': nonce}
            if self.chain_id is not None:
                tx_params['chainId'] = self.chain_id
            try:
                tx = await self._call(operation, lambda: fn.build_transaction(tx_params))
                signed = self.account.sign_transaction(tx)
                tx_hash = await self._call(
                    operation, lambda: self.w3.eth.send_raw_transaction(signed.raw_transaction)
                )
            except Exception:
                # Nothing was accepted with this nonce; resync from the node next time
                self._next_nonce = None
                raise
        tx_hex = Web3.to_hex(tx_hash)
        logger.info(f"{operation} sent with nonce {nonce}: {tx_hex}")
        return tx_hex

    async def submit_score_batch(self, week: int, entries: Sequence[Tuple[str, int]]) -> str:
        """
        Write absolute weekly totals for a batch of players.

        Re-submitting a total that is already stored is a no-op on-chain, so
        retries after an ambiguous outcome are safe.

        Args:
            week: Tournament week
            entries: (player address, absolute new total) pairs

        Returns:
            Transaction hash
        """
        if not entries:
            raise ValueError("submit_score_batch requires at least one entry")
        players = [to_checksum(player) for player, _ in entries]
        scores = [int(score) for _, score in entries]
        logger.info(f"Submitting {len(entries)} score(s) for week {week}")
        return await self._send('setScores', self.contract.functions.setScores(week, players, scores))

    async def start_new_week(self) -> str:
        logger.info("Advancing on-chain tournament week")
        return await self._send('startNewWeek', self.contract.functions.startNewWeek())

    async def confirm_transaction(self, tx_hash: str, timeout: float) -> Confirmation:
        """
        Wait up to `timeout` seconds for `tx_hash` to be mined.

        A timeout does not cancel the transaction; it may still land later.
        """
        try:
            receipt = await self._call(
                'waitForReceipt',
                lambda: self.w3.eth.wait_for_transaction_receipt(
                    tx_hash, timeout=timeout, poll_latency=ChainConstants.RECEIPT_POLL_LATENCY
                )
            )
        except ChainUnavailable as e:
            if isinstance(e.__cause__, TimeExhausted):
                logger.warning(f"Transaction {tx_hash} not mined within {timeout}s")
                return Confirmation(ConfirmationStatus.TIMED_OUT)
            raise

        block_number = receipt.get('blockNumber')
        if receipt.get('status') == 1:
            logger.info(f"Transaction {tx_hash} confirmed in block {block_number}")
            return Confirmation(ConfirmationStatus.SUCCESS, block_number)
        logger.error(f"Transaction {tx_hash} reverted in block {block_number}")
        return Confirmation(ConfirmationStatus.REVERTED, block_number)
