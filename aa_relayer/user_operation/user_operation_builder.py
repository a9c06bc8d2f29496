import logging

from aa_relayer.account.account_resolver import AccountInfo, AccountResolver
from aa_relayer.cli_manager import RelayerConfig, require_setting
from aa_relayer.typing import Address
from aa_relayer.utils.abi import ContractInterface, parse_units
from aa_relayer.utils.eth_client_utils import eth_call

from .user_operation import UserOperation

NONCE_KEY = 0


class UserOperationBuilder:
    account_resolver: AccountResolver
    read_node_urls: list[str]
    rpc_timeout: float
    relayer_address: Address | None
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    paymaster_verification_gas_limit: int | None
    paymaster_post_op_gas_limit: int | None
    use_entrypoint_nonce: bool

    def __init__(
        self,
        account_resolver: AccountResolver,
        account_interface: ContractInterface,
        entrypoint_interface: ContractInterface,
        token_interface: ContractInterface,
        config: RelayerConfig,
    ):
        self.account_resolver = account_resolver
        self.read_node_urls = config.read_node_urls
        self.rpc_timeout = config.rpc_timeout
        self.relayer_address = config.relayer_address
        self.call_gas_limit = config.call_gas_limit
        self.verification_gas_limit = config.verification_gas_limit
        self.pre_verification_gas = config.pre_verification_gas
        self.max_fee_per_gas = config.max_fee_per_gas
        self.max_priority_fee_per_gas = config.max_priority_fee_per_gas
        self.paymaster_verification_gas_limit = (
            config.paymaster_verification_gas_limit)
        self.paymaster_post_op_gas_limit = config.paymaster_post_op_gas_limit
        self.use_entrypoint_nonce = config.use_entrypoint_nonce

        self.execute_function = account_interface.get_function(
            "execute", ["address", "uint256", "bytes"],
            "execute(address,uint256,bytes)")
        self.get_nonce_function = entrypoint_interface.get_function(
            "getNonce", ["address", "uint192"],
            "getNonce(address,uint192)(uint256)")
        self.mint_to_function = token_interface.get_function(
            "mintTo", ["address", "uint256"], "mintTo(address,uint256)")

    async def get_nonce(self, entrypoint: Address, sender: Address) -> int:
        if not self.use_entrypoint_nonce:
            return 0
        raw_result = await eth_call(
            self.read_node_urls,
            entrypoint,
            self.get_nonce_function.encode([sender, NONCE_KEY]),
            timeout=self.rpc_timeout,
        )
        (nonce,) = self.get_nonce_function.decode_result(raw_result)
        return nonce

    async def build_gasless_operation(
        self,
        user_id: str,
        factory: Address,
        inner_target: Address,
        inner_call_data: str,
        paymaster: Address,
        entrypoint: Address,
        owner: Address | None = None,
    ) -> tuple[UserOperation, AccountInfo]:
        account = await self.account_resolver.resolve_account(
            factory, user_id, with_implementation=False)

        call_data = self.execute_function.encode(
            [inner_target, 0, bytes.fromhex(inner_call_data[2:])])

        factory_address = None
        factory_data = None
        if not account.deployed:
            if owner is None:
                owner = require_setting(self.relayer_address, "RELAYER_PK")
            factory_address = factory
            factory_data = account.factory_data(owner)

        nonce = await self.get_nonce(entrypoint, account.sender)

        user_operation = UserOperation(
            sender_address=account.sender,
            nonce=nonce,
            call_data=call_data,
            call_gas_limit=self.call_gas_limit,
            verification_gas_limit=self.verification_gas_limit,
            pre_verification_gas=self.pre_verification_gas,
            max_fee_per_gas=self.max_fee_per_gas,
            max_priority_fee_per_gas=self.max_priority_fee_per_gas,
            factory=factory_address,
            factory_data=factory_data,
            paymaster=paymaster,
            paymaster_verification_gas_limit=(
                self.paymaster_verification_gas_limit),
            paymaster_post_op_gas_limit=self.paymaster_post_op_gas_limit,
        )
        logging.debug(
            f"UserOperation built for user {user_id} - sender "
            f"{account.sender} - deployed: {account.deployed} - nonce: {nonce}"
        )
        return user_operation, account

    async def build_gasless_mint(
        self,
        user_id: str,
        factory: Address,
        token: Address,
        recipient: Address,
        amount: str,
        paymaster: Address,
        entrypoint: Address,
    ) -> tuple[UserOperation, AccountInfo]:
        mint_call_data = self.mint_to_function.encode(
            [recipient, parse_units(amount)])
        return await self.build_gasless_operation(
            user_id, factory, token, mint_call_data, paymaster, entrypoint)
