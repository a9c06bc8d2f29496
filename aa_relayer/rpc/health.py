import asyncio
import logging

from aa_relayer.exceptions import NetworkError, RpcError
from aa_relayer.typing import Address
from aa_relayer.utils.eth_client_utils import (get_balance,
                                               send_rpc_request_to_eth_client)


async def periodic_health_check_cron_job(
    node_urls_to_check: list[str],
    target_chain_id_hex: str | None,
    relayer: Address | None,
    min_balance: int,
    interval: int
):
    while True:
        await periodic_health_check(
            node_urls_to_check,
            target_chain_id_hex,
            relayer,
            min_balance,
        )
        await asyncio.sleep(interval)


async def periodic_health_check(
    node_urls_to_check: list[str],
    target_chain_id_hex: str | None,
    relayer: Address | None,
    min_balance: int,
):
    nodes_success, _ = await check_node_health(
        node_urls_to_check, target_chain_id_hex)
    if nodes_success and relayer is not None:
        await check_relayer_balance(node_urls_to_check, relayer, min_balance)


async def check_relayer_balance(
    node_urls: list[str], relayer: Address | None, min_balance: int
) -> tuple[bool, dict]:
    if relayer is None:
        return True, {
            "status": "DISABLED",
            "message": "RELAYER_PK not set"
        }
    try:
        relayer_balance = await get_balance(node_urls, relayer)
    except (NetworkError, RpcError) as excp:
        error_message = f"eth_getBalance failed: {str(excp)}"
        logging.critical(error_message)
        return False, {
                "status": "ERROR",
                "message": error_message
            }

    if relayer_balance >= min_balance:
        return True, {
            "status": "OK",
            "message": (
                f"Relayer {relayer} balance {hex(relayer_balance)}" +
                f" is equal or more than minimum balance {hex(min_balance)}"
             )
        }
    else:
        error_message = (
            f"Relayer {relayer} balance {hex(relayer_balance)}" +
            f" is less than minimum balance {hex(min_balance)}"
        )
        logging.warning(error_message)
        return False, {
            "status": "ERROR",
            "message": error_message
        }


async def check_node_health(
    node_urls_to_check: list[str],
    target_chain_id_hex: str | None,
) -> tuple[bool, dict]:
    all_ok = True
    results = dict()
    for node_url in node_urls_to_check:
        success, message = await check_live_ethereum_rpc(
                node_url, target_chain_id_hex)

        if success:
            results[node_url] = {"status": "OK", "message": message}
        else:
            logging.critical(message)
            all_ok = False
            results[node_url] = {"status": "ERROR", "message": message}

    return all_ok, results


async def check_live_ethereum_rpc(
    ethereum_node_url: str, target_chain_id_hex: str | None
) -> tuple[bool, str]:
    try:
        chain_id_hex = await send_rpc_request_to_eth_client(
            ethereum_node_url,
            "eth_chainId",
            [],
        )
    except NetworkError:
        return False, f"Connection refused for Eth node {ethereum_node_url}"
    except RpcError:
        return False, f"Invalid Eth node {ethereum_node_url}"

    if not isinstance(chain_id_hex, str):
        return False, f"Invalid Eth node {ethereum_node_url}"
    if target_chain_id_hex is None:
        return True, f"eth_chainId successful: {chain_id_hex}"
    if int(chain_id_hex, 16) == int(target_chain_id_hex, 16):
        return True, "eth_chainId successful"
    return False, (
        f"Invalid chain id {chain_id_hex} returned by " +
        f"{ethereum_node_url}"
    )
