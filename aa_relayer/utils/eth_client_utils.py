import asyncio
import itertools
import json
import logging
from typing import Any

from aiohttp import ClientError, ClientSession, ClientTimeout

from aa_relayer.exceptions import NetworkError, RpcError
from aa_relayer.typing import Address

DEFAULT_RPC_TIMEOUT = 8
EMPTY_CODE = "0x"

_request_ids = itertools.count(1)


async def send_rpc_request_to_eth_client(
    node_url: str,
    method: str,
    params: list | None = None,
    timeout: float = DEFAULT_RPC_TIMEOUT,
) -> Any:
    json_request = {
        "jsonrpc": "2.0",
        "id": next(_request_ids),
        "method": method,
        "params": params if params is not None else [],
    }
    headers = {"content-type": "application/json"}
    try:
        async with ClientSession(timeout=ClientTimeout(total=timeout)) as session:
            async with session.post(
                node_url,
                json=json_request,
                headers=headers
            ) as response:
                http_status = response.status
                resp = await response.read()
    except asyncio.TimeoutError:
        raise NetworkError(node_url, f"{method} timed out after {timeout}s")
    except ClientError as excp:
        raise NetworkError(node_url, f"{method} failed: {str(excp)}")

    try:
        json_result = json.loads(resp)
    except (json.decoder.JSONDecodeError, UnicodeDecodeError):
        logging.debug(f"Invalid json response from {node_url} for {method}")
        json_result = {}
    if not isinstance(json_result, dict):
        json_result = {}

    if "result" in json_result:
        return json_result["result"]

    error = json_result.get("error")
    if isinstance(error, dict) and error.get("message"):
        raise RpcError(node_url, str(error["message"]), error, http_status)
    raise RpcError(
        node_url,
        f"rpc error {http_status}",
        error if isinstance(error, dict) else None,
        http_status
    )


async def send_rpc_request_to_eth_clients(
    nodes_urls: list[str],
    method: str,
    params: list | None = None,
    timeout: float = DEFAULT_RPC_TIMEOUT,
) -> Any:
    last_error: NetworkError | RpcError | None = None
    for index, node_url in enumerate(nodes_urls):
        if index > 0:
            logging.info(f"retrying {method} with node no: {index + 1}.")
        try:
            return await send_rpc_request_to_eth_client(
                node_url, method, params, timeout)
        except (NetworkError, RpcError) as excp:
            logging.warning(
                f"Attempt No. {index + 1} to call {method} failed "
                f"on {node_url}: {str(excp)}"
            )
            last_error = excp
    if last_error is None:
        raise NetworkError(None, "all RPCs failed - no read endpoints configured")
    raise last_error


async def eth_call(
    nodes_urls: list[str],
    to: Address,
    data: str,
    block: str = "latest",
    timeout: float = DEFAULT_RPC_TIMEOUT,
) -> str:
    return await send_rpc_request_to_eth_clients(
        nodes_urls, "eth_call", [{"to": to, "data": data}, block], timeout
    )


async def get_code(
    nodes_urls: list[str],
    address: Address,
    timeout: float = DEFAULT_RPC_TIMEOUT,
) -> str:
    return await send_rpc_request_to_eth_clients(
        nodes_urls, "eth_getCode", [address, "latest"], timeout
    )


async def get_balance(
    nodes_urls: list[str],
    address: Address,
    timeout: float = DEFAULT_RPC_TIMEOUT,
) -> int:
    balance_hex = await send_rpc_request_to_eth_clients(
        nodes_urls, "eth_getBalance", [address, "latest"], timeout
    )
    return int(balance_hex, 16)


async def get_chain_id(
    nodes_urls: list[str], timeout: float = DEFAULT_RPC_TIMEOUT
) -> int:
    chain_id_hex = await send_rpc_request_to_eth_clients(
        nodes_urls, "eth_chainId", [], timeout
    )
    return int(chain_id_hex, 16)


async def get_block_number(
    nodes_urls: list[str], timeout: float = DEFAULT_RPC_TIMEOUT
) -> int:
    block_number_hex = await send_rpc_request_to_eth_clients(
        nodes_urls, "eth_blockNumber", [], timeout
    )
    return int(block_number_hex, 16)


def has_code(code: str | None) -> bool:
    if code is None or code in ("", EMPTY_CODE):
        return False
    return int(code, 16) != 0
