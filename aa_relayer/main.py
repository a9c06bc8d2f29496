import asyncio
import logging
import sys
from functools import partial
from signal import SIGINT, SIGTERM

import uvloop

from aa_relayer.metrics.metrics import run_metrics_server
from aa_relayer.rpc.health import (check_node_health,
                                   periodic_health_check_cron_job)
from aa_relayer.utils.SignalHaltError import immediate_exit

from .cli_manager import parse_args
from .rpc.http_server import create_relayer_context, run_relayer_http_server


async def main(cmd_args=sys.argv[1:], loop=None) -> None:
    init_data = parse_args(cmd_args)
    if loop is None:
        loop = asyncio.get_running_loop()

    for signal_enum in [SIGINT, SIGTERM]:
        exit_func = partial(immediate_exit, signal_enum=signal_enum, loop=loop)
        loop.add_signal_handler(signal_enum, exit_func)

    target_chain_id_hex = (
        None if init_data.chain_id is None else hex(init_data.chain_id))
    nodes_success, _ = await check_node_health(
        init_data.read_node_urls, target_chain_id_hex)
    if not nodes_success:
        logging.warning(
            "Not all read nodes are healthy - reads will fall back in order")

    context = create_relayer_context(init_data)
    runner = await run_relayer_http_server(
        context,
        host=init_data.rpc_url,
        port=init_data.rpc_port,
    )
    try:
        async with asyncio.TaskGroup() as task_group:
            if init_data.is_metrics:
                run_metrics_server(
                    host=init_data.rpc_url,
                    port=init_data.metrics_port,
                )
            if init_data.health_check_interval > 0:
                task_group.create_task(
                    periodic_health_check_cron_job(
                        node_urls_to_check=init_data.read_node_urls,
                        target_chain_id_hex=target_chain_id_hex,
                        relayer=init_data.relayer_address,
                        min_balance=init_data.min_relayer_balance,
                        interval=init_data.health_check_interval
                    )
                )
            task_group.create_task(asyncio.Event().wait())
    finally:
        await runner.cleanup()


def run() -> None:
    uvloop.run(main())


if __name__ == "__main__":
    run()
