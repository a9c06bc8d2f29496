import logging

from aa_relayer.exceptions import BundlerRejectionError, RpcError
from aa_relayer.typing import Address, UserOperationHash
from aa_relayer.user_operation.user_operation import UserOperation
from aa_relayer.utils.eth_client_utils import send_rpc_request_to_eth_client


class BundlerClient:
    bundler_url: str
    timeout: float

    def __init__(self, bundler_url: str, timeout: float):
        self.bundler_url = bundler_url
        self.timeout = timeout

    async def send_user_operation(
        self, user_operation: UserOperation, entrypoint: Address
    ) -> UserOperationHash:
        user_operation_json = user_operation.get_user_operation_json()
        try:
            user_operation_hash = await send_rpc_request_to_eth_client(
                self.bundler_url,
                "eth_sendUserOperation",
                [user_operation_json, entrypoint],
                self.timeout,
            )
        except RpcError as excp:
            if excp.error is None:
                raise
            logging.warning(
                f"Bundler rejected UserOperation from "
                f"{user_operation.sender_address}: {excp.message}"
            )
            raise BundlerRejectionError(excp.error, user_operation_json)

        logging.info(
            f"UserOperation {user_operation_hash} sent to bundler - "
            f"sender: {user_operation.sender_address}"
        )
        return UserOperationHash(user_operation_hash)

    async def client_version(self) -> str:
        return await send_rpc_request_to_eth_client(
            self.bundler_url, "web3_clientVersion", [], self.timeout
        )
