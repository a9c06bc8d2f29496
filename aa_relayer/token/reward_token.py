import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from aa_relayer.relayer.transaction_sender import RelayerTransactionSender
from aa_relayer.typing import Address, TransactionHash
from aa_relayer.utils.abi import ContractInterface, parse_units
from aa_relayer.utils.eth_client_utils import eth_call

MAX_UINT256 = 2**256 - 1


@dataclass
class TokenInfo:
    address: Address
    name: str
    symbol: str
    decimals: int
    owner: Address
    total_supply: int
    price_per_token_wei: int

    def get_token_json(self) -> dict[str, Any]:
        total_supply_formatted = (
            Decimal(self.total_supply).scaleb(-self.decimals).normalize())
        return {
            "address": self.address,
            "name": self.name,
            "symbol": self.symbol,
            "decimals": self.decimals,
            "owner": self.owner,
            "totalSupply": str(self.total_supply),
            "totalSupplyFormatted": format(total_supply_formatted, "f"),
            "pricePerTokenWei": str(self.price_per_token_wei),
        }


class RewardToken:
    token_address: Address
    token_interface: ContractInterface
    read_node_urls: list[str]
    rpc_timeout: float
    transaction_sender: RelayerTransactionSender

    def __init__(
        self,
        token_address: Address,
        token_interface: ContractInterface,
        read_node_urls: list[str],
        rpc_timeout: float,
        transaction_sender: RelayerTransactionSender,
    ):
        self.token_address = token_address
        self.token_interface = token_interface
        self.read_node_urls = read_node_urls
        self.rpc_timeout = rpc_timeout
        self.transaction_sender = transaction_sender

    async def _call(self, function_name: str, args: list | None = None) -> Any:
        function = self.token_interface.get_function(function_name)
        raw_result = await eth_call(
            self.read_node_urls,
            self.token_address,
            function.encode(args if args is not None else []),
            timeout=self.rpc_timeout,
        )
        (result,) = function.decode_result(raw_result)
        return result

    async def _transact(
        self, function_name: str, args: list, value: int = 0
    ) -> TransactionHash:
        function = self.token_interface.get_function(function_name)
        transaction_hash, _ = await self.transaction_sender.send_and_wait(
            self.token_address, function.encode(args), value
        )
        return transaction_hash

    async def get_info(self) -> TokenInfo:
        tasks = await asyncio.gather(
            self._call("name"),
            self._call("symbol"),
            self._call("decimals"),
            self._call("owner"),
            self._call("totalSupply"),
            self._call("pricePerTokenWei"),
        )
        return TokenInfo(self.token_address, *tasks)

    async def get_price(self) -> int:
        return await self._call("pricePerTokenWei")

    async def get_minter_allowance(self, minter: Address) -> int:
        return await self._call("minterAllowance", [minter])

    async def set_price(self, price_wei: int) -> TransactionHash:
        return await self._transact("setPricePerTokenWei", [price_wei])

    async def set_minter_allowance(
        self, minter: Address, allowance: int
    ) -> TransactionHash:
        return await self._transact("setMinterAllowance", [minter, allowance])

    async def mint(self, to: Address, amount: str) -> TransactionHash:
        relayer_address = self.transaction_sender.require_relayer_address()
        current_allowance = await self.get_minter_allowance(relayer_address)
        if current_allowance != MAX_UINT256:
            await self.set_minter_allowance(relayer_address, MAX_UINT256)
        return await self._transact("mintTo", [to, parse_units(amount)])

    async def buy(self, to: Address, amount: int) -> tuple[TransactionHash, int]:
        price = await self.get_price()
        value = price * amount
        transaction_hash = await self._transact("buy", [to, amount], value)
        return transaction_hash, value
