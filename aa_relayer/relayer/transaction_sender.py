import asyncio
import logging
import math
from typing import Any

from eth_account import Account
from eth_utils import to_checksum_address, to_hex

from aa_relayer.cli_manager import RelayerConfig, require_setting
from aa_relayer.exceptions import TransactionError
from aa_relayer.typing import Address, TransactionHash
from aa_relayer.utils.eth_client_utils import send_rpc_request_to_eth_client


class RelayerTransactionSender:
    ethereum_node_url: str
    relayer_address: Address | None
    relayer_private_key: str | None
    chain_id: int | None
    is_legacy_mode: bool
    max_fee_per_gas_percentage_multiplier: int
    rpc_timeout: float
    receipt_timeout: float
    receipt_poll_interval: float

    def __init__(
        self,
        ethereum_node_url: str,
        relayer_address: Address | None,
        relayer_private_key: str | None,
        chain_id: int | None,
        is_legacy_mode: bool,
        max_fee_per_gas_percentage_multiplier: int,
        rpc_timeout: float,
        receipt_timeout: float,
        receipt_poll_interval: float,
    ):
        self.ethereum_node_url = ethereum_node_url
        self.relayer_address = relayer_address
        self.relayer_private_key = relayer_private_key
        self.chain_id = chain_id
        self.is_legacy_mode = is_legacy_mode
        self.max_fee_per_gas_percentage_multiplier = (
            max_fee_per_gas_percentage_multiplier)
        self.rpc_timeout = rpc_timeout
        self.receipt_timeout = receipt_timeout
        self.receipt_poll_interval = receipt_poll_interval

    @classmethod
    def from_config(cls, config: RelayerConfig) -> "RelayerTransactionSender":
        return cls(
            config.ethereum_node_url,
            config.relayer_address,
            config.relayer_pk,
            config.chain_id,
            config.is_legacy_mode,
            config.max_fee_per_gas_percentage_multiplier,
            config.rpc_timeout,
            config.receipt_timeout,
            config.receipt_poll_interval,
        )

    def require_relayer_address(self) -> Address:
        require_setting(self.relayer_private_key, "RELAYER_PK")
        return require_setting(self.relayer_address, "RELAYER_PK")

    async def _request(self, method: str, params: list | None = None) -> Any:
        return await send_rpc_request_to_eth_client(
            self.ethereum_node_url, method, params, self.rpc_timeout
        )

    async def get_chain_id(self) -> int:
        if self.chain_id is None:
            chain_id_hex = await self._request("eth_chainId")
            self.chain_id = int(chain_id_hex, 16)
        return self.chain_id

    async def send_transaction(
        self, to: Address, data: str, value: int = 0
    ) -> TransactionHash:
        relayer_address = self.require_relayer_address()

        estimate_params = {
            "from": relayer_address,
            "to": to,
            "data": data,
        }
        if value > 0:
            estimate_params["value"] = hex(value)

        tasks_arr = [
            self._request(
                "eth_getTransactionCount", [relayer_address, "pending"]),
            self._request("eth_gasPrice"),
            self._request("eth_estimateGas", [estimate_params]),
            self.get_chain_id(),
        ]
        if not self.is_legacy_mode:
            tasks_arr.append(self._request("eth_maxPriorityFeePerGas"))

        tasks = await asyncio.gather(*tasks_arr)

        nonce = int(tasks[0], 16)
        gas_limit = math.ceil(int(tasks[2], 16) * 1.2)  # 20% buffer
        chain_id = tasks[3]

        max_fee_per_gas = math.ceil(
            int(tasks[1], 16)
            * (self.max_fee_per_gas_percentage_multiplier / 100)
        )

        txnDict: dict[str, Any] = {
            "chainId": chain_id,
            "from": to_checksum_address(relayer_address),
            "to": to_checksum_address(to),
            "nonce": nonce,
            "gas": gas_limit,
            "value": value,
            "data": data,
        }
        if self.is_legacy_mode:
            txnDict["gasPrice"] = max_fee_per_gas
        else:
            max_priority_fee_per_gas = int(tasks[4], 16)
            # max priority fee per gas can't be higher than max fee per gas
            if max_priority_fee_per_gas > max_fee_per_gas:
                max_priority_fee_per_gas = max_fee_per_gas
            txnDict.update(
                {
                    "maxFeePerGas": max_fee_per_gas,
                    "maxPriorityFeePerGas": max_priority_fee_per_gas,
                }
            )

        sign_store_txn = Account.sign_transaction(
            txnDict, private_key=self.relayer_private_key
        )
        raw_transaction = to_hex(sign_store_txn.raw_transaction)

        transaction_hash = await self._request(
            "eth_sendRawTransaction", [raw_transaction]
        )
        logging.info(
            f"Relayer transaction sent to {to} - nonce: {nonce} - "
            f"hash: {transaction_hash}"
        )
        return TransactionHash(transaction_hash)

    async def wait_for_receipt(
        self, transaction_hash: TransactionHash
    ) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.receipt_timeout
        while True:
            receipt = await self._request(
                "eth_getTransactionReceipt", [transaction_hash]
            )
            if receipt is not None:
                break
            if loop.time() >= deadline:
                raise TransactionError(
                    transaction_hash,
                    f"no receipt after {self.receipt_timeout}s",
                )
            await asyncio.sleep(self.receipt_poll_interval)

        if receipt.get("status") == "0x0":
            raise TransactionError(transaction_hash, "transaction reverted")
        logging.debug(
            f"Relayer transaction {transaction_hash} mined in block "
            f"{receipt.get('blockNumber')}"
        )
        return receipt

    async def send_and_wait(
        self, to: Address, data: str, value: int = 0
    ) -> tuple[TransactionHash, dict[str, Any]]:
        transaction_hash = await self.send_transaction(to, data, value)
        receipt = await self.wait_for_receipt(transaction_hash)
        return transaction_hash, receipt
