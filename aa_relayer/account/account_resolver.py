import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from eth_utils import keccak

from aa_relayer.exceptions import (AccountResolutionError, DecodingError,
                                   NetworkError, RpcError)
from aa_relayer.typing import Address
from aa_relayer.utils.abi import ContractInterface, FunctionSignature
from aa_relayer.utils.eth_client_utils import eth_call, get_code, has_code

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def user_id_salt(user_id: str) -> bytes:
    return keccak(text=user_id)


@dataclass(frozen=True)
class AddressDerivationVariant:
    name: str
    get_address: FunctionSignature
    create_account: FunctionSignature
    salt_for: Callable[[str], Any]

    def factory_data(self, user_id: str, owner: Address) -> str:
        return self.create_account.encode([self.salt_for(user_id), owner])


@dataclass(frozen=True)
class PrimaryResolution:
    sender: Address
    variant: AddressDerivationVariant


@dataclass(frozen=True)
class FallbackResolution:
    sender: Address
    variant: AddressDerivationVariant


@dataclass(frozen=True)
class FailedResolution:
    reasons: list[str] = field(default_factory=list)


AddressResolution = PrimaryResolution | FallbackResolution | FailedResolution


@dataclass
class AccountInfo:
    user_id: str
    factory: Address
    sender: Address
    deployed: bool
    variant: AddressDerivationVariant
    implementation: Address | None = None

    @property
    def used_fallback(self) -> bool:
        return self.variant.name != "string"

    def factory_data(self, owner: Address) -> str:
        return self.variant.factory_data(self.user_id, owner)

    def get_account_json(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "factory": self.factory,
            "implementation": self.implementation,
            "smartAccount": self.sender,
            "deployed": self.deployed,
            "variant": self.variant.name,
        }


class AccountResolver:
    read_node_urls: list[str]
    rpc_timeout: float
    primary_variant: AddressDerivationVariant
    fallback_variant: AddressDerivationVariant
    implementation_function: FunctionSignature

    def __init__(
        self,
        factory_interface: ContractInterface,
        read_node_urls: list[str],
        rpc_timeout: float,
    ):
        self.read_node_urls = read_node_urls
        self.rpc_timeout = rpc_timeout
        self.primary_variant = AddressDerivationVariant(
            "string",
            factory_interface.get_function(
                "getAddress", ["string"], "getAddress(string)(address)"),
            factory_interface.get_function(
                "createAccount", ["string", "address"],
                "createAccount(string,address)(address)"),
            lambda user_id: user_id,
        )
        self.fallback_variant = AddressDerivationVariant(
            "bytes32",
            factory_interface.get_function(
                "getAddress", ["bytes32"], "getAddress(bytes32)(address)"),
            factory_interface.get_function(
                "createAccount", ["bytes32", "address"],
                "createAccount(bytes32,address)(address)"),
            user_id_salt,
        )
        self.implementation_function = factory_interface.get_function(
            "implementation", [], "implementation()(address)")

    async def resolve_account(
        self, factory: Address, user_id: str, with_implementation: bool = True
    ) -> AccountInfo:
        resolution = await self.derive_address(factory, user_id)
        if isinstance(resolution, FailedResolution):
            raise AccountResolutionError(factory, resolution.reasons)

        tasks_arr = [
            get_code(self.read_node_urls, resolution.sender, self.rpc_timeout)
        ]
        if with_implementation:
            tasks_arr.append(self.get_implementation(factory))
        tasks = await asyncio.gather(*tasks_arr)

        return AccountInfo(
            user_id=user_id,
            factory=factory,
            sender=resolution.sender,
            deployed=has_code(tasks[0]),
            variant=resolution.variant,
            implementation=tasks[1] if with_implementation else None,
        )

    async def is_deployed(self, address: Address) -> bool:
        code = await get_code(self.read_node_urls, address, self.rpc_timeout)
        return has_code(code)

    async def derive_address(
        self, factory: Address, user_id: str
    ) -> AddressResolution:
        primary = await self._try_variant(
            self.primary_variant, PrimaryResolution, factory, user_id)
        if not isinstance(primary, FailedResolution):
            return primary

        logging.debug(
            f"getAddress(string) failed for factory {factory}: "
            f"{primary.reasons} - trying getAddress(bytes32)"
        )
        fallback = await self._try_variant(
            self.fallback_variant, FallbackResolution, factory, user_id)
        if not isinstance(fallback, FailedResolution):
            return fallback

        return FailedResolution(primary.reasons + fallback.reasons)

    async def _try_variant(
        self,
        variant: AddressDerivationVariant,
        resolution_type: type[PrimaryResolution] | type[FallbackResolution],
        factory: Address,
        user_id: str,
    ) -> AddressResolution:
        function = variant.get_address
        call_data = function.encode([variant.salt_for(user_id)])
        try:
            raw_result = await eth_call(
                self.read_node_urls, factory, call_data,
                timeout=self.rpc_timeout
            )
            (sender,) = function.decode_result(raw_result)
        except (NetworkError, RpcError, DecodingError) as excp:
            return FailedResolution([f"{function.signature}: {str(excp)}"])
        if int(sender, 16) == 0:
            return FailedResolution(
                [f"{function.signature}: returned the zero address"])
        return resolution_type(Address(sender), variant)

    async def get_implementation(self, factory: Address) -> Address | None:
        try:
            raw_result = await eth_call(
                self.read_node_urls,
                factory,
                self.implementation_function.encode([]),
                timeout=self.rpc_timeout
            )
            (implementation,) = self.implementation_function.decode_result(
                raw_result)
        except (NetworkError, RpcError, DecodingError) as excp:
            logging.debug(
                f"implementation() not available on factory {factory}: {excp}")
            return None
        return Address(implementation)
