"""web3-backed chain collaborator for ERC-4626 vault deposits and withdrawals."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound, Web3Exception

from constants import ACTION_DEPOSIT, ACTION_WITHDRAW
from strategy.errors import ChainError, ConfirmationTimeout, SubmissionFailed
from strategy.models import AmountPolicy

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]

ERC4626_ABI = [
    {
        "inputs": [{"name": "assets", "type": "uint256"}, {"name": "receiver", "type": "address"}],
        "name": "deposit",
        "outputs": [{"name": "shares", "type": "uint256"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "assets", "type": "uint256"},
            {"name": "receiver", "type": "address"},
            {"name": "owner", "type": "address"},
        ],
        "name": "withdraw",
        "outputs": [{"name": "shares", "type": "uint256"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "maxWithdraw",
        "outputs": [{"name": "maxAssets", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]

GAS_LIMIT_BUFFER = Decimal("1.2")


@dataclass(slots=True)
class TransactionRequest:
    action_type: str
    to: str
    call: Any
    amount: float
    amount_wei: int
    gas_limit: Optional[int] = None


@dataclass(slots=True)
class ConfirmationResult:
    success: bool
    gas_used: int
    gas_fee: float
    block_number: Optional[int] = None


class Web3ChainClient:
    """Builds, signs and tracks vault transactions for the configured wallet."""

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        wallet_address: Optional[str] = None,
        web3: Optional[Web3] = None,
    ) -> None:
        self.web3 = web3 or Web3(Web3.HTTPProvider(rpc_url))
        if web3 is None and not self.web3.is_connected():
            raise RuntimeError(f"Could not connect to RPC URL: {rpc_url}")

        self.account = self.web3.eth.account.from_key(private_key)
        self.wallet_address = Web3.to_checksum_address(wallet_address or self.account.address)
        self._decimals_cache: dict[str, int] = {}
        self.logger = logging.getLogger(__name__)
        self.logger.setLevel(logging.INFO)

    async def prepare(self, action_type: str, opportunity, amount_policy: AmountPolicy) -> TransactionRequest:
        return await asyncio.to_thread(self._prepare_sync, action_type, opportunity, amount_policy)

    def _prepare_sync(self, action_type: str, opportunity, amount_policy: AmountPolicy) -> TransactionRequest:
        if not opportunity.pool_address or not opportunity.asset_address:
            raise ChainError(f"opportunity {opportunity.id} has no vault or asset address")
        try:
            vault_address = self.web3.to_checksum_address(opportunity.pool_address)
            token_address = self.web3.to_checksum_address(opportunity.asset_address)
            vault = self.web3.eth.contract(address=vault_address, abi=ERC4626_ABI)
            token = self.web3.eth.contract(address=token_address, abi=ERC20_ABI)
            decimals = self._get_token_decimals(token_address)

            if action_type == ACTION_DEPOSIT:
                if amount_policy.kind == 'all':
                    amount_wei = token.functions.balanceOf(self.wallet_address).call()
                else:
                    amount_wei = self._to_wei(Decimal(str(amount_policy.amount)), decimals)
                if amount_wei <= 0:
                    raise ChainError("wallet holds nothing to deposit")
                allowance = token.functions.allowance(self.wallet_address, vault_address).call()
                if allowance < amount_wei:
                    raise ChainError(f"token allowance {allowance} is below deposit amount {amount_wei}")
                call = vault.functions.deposit(amount_wei, self.wallet_address)
            elif action_type == ACTION_WITHDRAW:
                if amount_policy.kind == 'all':
                    amount_wei = vault.functions.maxWithdraw(self.wallet_address).call()
                else:
                    amount_wei = self._to_wei(Decimal(str(amount_policy.amount)), decimals)
                if amount_wei <= 0:
                    raise ChainError("no position to withdraw")
                call = vault.functions.withdraw(amount_wei, self.wallet_address, self.wallet_address)
            else:
                raise ChainError(f"unsupported on-chain action: {action_type}")
        except Web3Exception as exc:
            raise ChainError(str(exc)) from exc

        amount = float(Decimal(amount_wei) / (Decimal(10) ** decimals))
        self.logger.info(
            "[Chain] prepared %s of %s (%s wei) on vault %s",
            action_type,
            amount,
            amount_wei,
            vault_address,
        )
        return TransactionRequest(
            action_type=action_type,
            to=vault_address,
            call=call,
            amount=amount,
            amount_wei=amount_wei,
        )

    async def estimate_gas(self, tx: TransactionRequest) -> float:
        """Returns the estimated fee in native-token units."""
        return await asyncio.to_thread(self._estimate_gas_sync, tx)

    def _estimate_gas_sync(self, tx: TransactionRequest) -> float:
        try:
            gas = tx.call.estimate_gas({"from": self.wallet_address})
            gas_price = self.web3.eth.gas_price
        except Web3Exception as exc:
            raise ChainError(f"gas estimation failed: {exc}") from exc
        tx.gas_limit = int(Decimal(gas) * GAS_LIMIT_BUFFER)
        return float(Web3.from_wei(gas * gas_price, "ether"))

    async def submit(self, tx: TransactionRequest) -> str:
        return await asyncio.to_thread(self._submit_sync, tx)

    def _submit_sync(self, tx: TransactionRequest) -> str:
        try:
            nonce = self.web3.eth.get_transaction_count(self.wallet_address, "pending")
            params = {"from": self.wallet_address, "nonce": nonce, "chainId": self.web3.eth.chain_id}
            if tx.gas_limit:
                params["gas"] = tx.gas_limit
            built = tx.call.build_transaction(params)
            signed = self.account.sign_transaction(built)
            tx_hash = self.web3.eth.send_raw_transaction(signed.raw_transaction)
        except (Web3Exception, ValueError) as exc:
            self.logger.error("Transaction submission rejected: %s", exc)
            raise SubmissionFailed(str(exc)) from exc
        tx_hash_hex = Web3.to_hex(tx_hash)
        self.logger.info("[Chain] submitted %s to %s: %s", tx.action_type, tx.to, tx_hash_hex)
        return tx_hash_hex

    async def await_confirmation(self, tx_hash: str, timeout: float) -> ConfirmationResult:
        return await asyncio.to_thread(self._await_confirmation_sync, tx_hash, timeout)

    def _await_confirmation_sync(self, tx_hash: str, timeout: float) -> ConfirmationResult:
        try:
            receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted as exc:
            raise ConfirmationTimeout(tx_hash, timeout) from exc
        except (Web3Exception, ValueError, OSError) as exc:
            raise ChainError(f"receipt lookup failed for {tx_hash}: {exc}") from exc
        return self._receipt_to_result(receipt)

    async def get_receipt(self, tx_hash: str) -> Optional[ConfirmationResult]:
        """Looks up a receipt without waiting; ``None`` while the transaction is unknown or unmined."""
        return await asyncio.to_thread(self._get_receipt_sync, tx_hash)

    def _get_receipt_sync(self, tx_hash: str) -> Optional[ConfirmationResult]:
        try:
            receipt = self.web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except (Web3Exception, ValueError, OSError) as exc:
            raise ChainError(f"receipt lookup failed for {tx_hash}: {exc}") from exc
        return self._receipt_to_result(receipt)

    @staticmethod
    def _receipt_to_result(receipt) -> ConfirmationResult:
        gas_used = int(receipt["gasUsed"])
        effective_price = int(receipt.get("effectiveGasPrice", 0) or 0)
        return ConfirmationResult(
            success=receipt["status"] == 1,
            gas_used=gas_used,
            gas_fee=float(Web3.from_wei(gas_used * effective_price, "ether")),
            block_number=receipt.get("blockNumber"),
        )

    def _get_token_decimals(self, token_address: str) -> int:
        token_address = self.web3.to_checksum_address(token_address)
        if token_address not in self._decimals_cache:
            contract = self.web3.eth.contract(address=token_address, abi=ERC20_ABI)
            self._decimals_cache[token_address] = contract.functions.decimals().call()
        return self._decimals_cache[token_address]

    @staticmethod
    def _to_wei(amount: Decimal, decimals: int) -> int:
        scale = Decimal(10) ** decimals
        return int((amount * scale).to_integral_value())

    async def close(self) -> None:
        return None
