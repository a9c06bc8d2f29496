import asyncio
import json
import logging
import re
from contextlib import nullcontext
from contextvars import ContextVar
from dataclasses import dataclass
from functools import partial, wraps
from typing import Any, Awaitable, Callable

import aiohttp_cors
from aiohttp import web
from aiohttp.abc import AbstractAccessLogger
from eth_utils import from_wei
from prometheus_client import Summary

from aa_relayer.account.account_deployer import AccountDeployer
from aa_relayer.account.account_resolver import AccountResolver
from aa_relayer.bundler.bundler_client import BundlerClient
from aa_relayer.cli_manager import RelayerConfig, require_setting
from aa_relayer.exceptions import (BundlerRejectionError, ConfigurationError,
                                   InvalidRequestError, RelayerException,
                                   RpcError)
from aa_relayer.relayer.transaction_sender import RelayerTransactionSender
from aa_relayer.rpc.health import check_node_health, check_relayer_balance
from aa_relayer.token.reward_token import MAX_UINT256, RewardToken
from aa_relayer.typing import Address
from aa_relayer.user_operation.user_operation_builder import \
    UserOperationBuilder
from aa_relayer.utils.abi import (ContractInterface, load_contract_interface,
                                  parse_units)
from aa_relayer.utils.eth_client_utils import (eth_call, get_balance,
                                               get_block_number, get_chain_id,
                                               get_code, has_code)

RESPONSE_LOG = ContextVar('RESPONSE_LOG', default=dict())

DEFAULT_AMOUNT = "10"

CHAIN_NAMES = {
    1: "mainnet",
    10: "optimism",
    137: "matic",
    8453: "base",
    17000: "holesky",
    42161: "arbitrum",
    80002: "matic-amoy",
    84532: "base-sepolia",
    11155111: "sepolia",
    11155420: "optimism-sepolia",
}


class AccessLogger(AbstractAccessLogger):
    def log(self, request, response, time):
        if time >= 1:
            time_str = f"{round(time, 3)}s"
        elif time >= 0.001:
            time_str = f"{round(time*1000, 3)}ms"
        else:
            time_str = f"{round(time*1000_000, 3)}μs"

        log_obj = RESPONSE_LOG.get()

        referer = request.headers.get('Referer')
        agent = request.headers.get('User-Agent')
        base_log = (
            f'{request.remote} '
            f'"{request.method} {request.path}" '
            f'done in {time_str}: {response.status} '
            f'"{referer}" "{agent}" '
        )
        if log_obj.get("is_error"):
            self.logger.warning(
                base_log + f"- error message:{log_obj['error_message']}"
            )
        else:
            self.logger.info(base_log)


REQUEST_TIME_api_aa_address = Summary(
    "request_processing_seconds_api_aa_address",
    "Time spent processing request /api/aa/address",
)
REQUEST_TIME_api_aa_deploy = Summary(
    "request_processing_seconds_api_aa_deploy",
    "Time spent processing request /api/aa/deploy",
)
REQUEST_TIME_api_aa_create = Summary(
    "request_processing_seconds_api_aa_create",
    "Time spent processing request /api/aa/create",
)
REQUEST_TIME_api_aa_gasless_mint_draft = Summary(
    "request_processing_seconds_api_aa_gasless_mint_draft",
    "Time spent processing request /api/aa/gasless-mint/draft",
)
REQUEST_TIME_api_aa_gasless_mint_send = Summary(
    "request_processing_seconds_api_aa_gasless_mint_send",
    "Time spent processing request /api/aa/gasless-mint/send",
)


@dataclass
class RelayerContext:
    config: RelayerConfig
    account_resolver: AccountResolver
    account_deployer: AccountDeployer
    transaction_sender: RelayerTransactionSender
    user_operation_builder: UserOperationBuilder
    token_interface: ContractInterface
    entrypoint_interface: ContractInterface

    def get_factory(self) -> Address:
        return require_setting(self.config.factory_address, "AA_FACTORY")

    def get_entrypoint(self) -> Address:
        return require_setting(self.config.entrypoint, "ENTRYPOINT")

    def get_paymaster(self) -> Address:
        return require_setting(self.config.paymaster_address, "PAYMASTER")

    def get_token_address(self) -> Address:
        return require_setting(self.config.token_address, "REWARD_TOKEN")

    def get_bundler_client(self) -> BundlerClient:
        bundler_url = require_setting(self.config.bundler_url, "BUNDLER_URL")
        return BundlerClient(bundler_url, self.config.rpc_timeout)

    def get_reward_token(self) -> RewardToken:
        return RewardToken(
            self.get_token_address(),
            self.token_interface,
            self.config.read_node_urls,
            self.config.rpc_timeout,
            self.transaction_sender,
        )


RELAYER_CONTEXT = web.AppKey("relayer_context", RelayerContext)


def create_relayer_context(config: RelayerConfig) -> RelayerContext:
    factory_interface = load_contract_interface(
        "AccountFactory", config.artifacts_dir)
    account_interface = load_contract_interface(
        "MinimalAccount", config.artifacts_dir)
    entrypoint_interface = load_contract_interface(
        "EntryPoint", config.artifacts_dir)
    token_interface = load_contract_interface(
        "RewardToken", config.artifacts_dir)

    account_resolver = AccountResolver(
        factory_interface, config.read_node_urls, config.rpc_timeout)
    transaction_sender = RelayerTransactionSender.from_config(config)
    account_deployer = AccountDeployer(account_resolver, transaction_sender)
    user_operation_builder = UserOperationBuilder(
        account_resolver,
        account_interface,
        entrypoint_interface,
        token_interface,
        config,
    )
    return RelayerContext(
        config=config,
        account_resolver=account_resolver,
        account_deployer=account_deployer,
        transaction_sender=transaction_sender,
        user_operation_builder=user_operation_builder,
        token_interface=token_interface,
        entrypoint_interface=entrypoint_interface,
    )


Handler = Callable[[RelayerContext, web.Request], Awaitable[dict[str, Any]]]


def _error_response(
    status: int, payload: dict[str, Any], error_message: str
) -> web.Response:
    RESPONSE_LOG.set(
        {
            "is_error": True,
            "error_message": error_message,
        }
    )
    return web.json_response(payload, status=status)


def json_endpoint(summary: Summary | None = None):
    """
    Wraps a handler returning a dict into an aiohttp handler returning
    JSON, translating relayer exceptions into error responses.
    """
    def decorator(handler: Handler):
        @wraps(handler)
        async def wrapper(request: web.Request) -> web.Response:
            context = request.app[RELAYER_CONTEXT]
            timer = summary.time() if summary is not None else nullcontext()
            with timer:
                try:
                    payload = await handler(context, request)
                except (ConfigurationError, InvalidRequestError) as excp:
                    return _error_response(400, {"error": str(excp)}, str(excp))
                except BundlerRejectionError as excp:
                    return _error_response(
                        400,
                        {
                            "error": "Bundler rejected",
                            "details": excp.error,
                            "sentUserOp": excp.user_operation,
                        },
                        str(excp),
                    )
                except RelayerException as excp:
                    logging.error(f"{request.path} failed: {str(excp)}")
                    return _error_response(500, {"error": str(excp)}, str(excp))
                except Exception as excp:
                    logging.exception(f"{request.path} failed unexpectedly")
                    return _error_response(500, {"error": str(excp)}, str(excp))

            RESPONSE_LOG.set({"is_error": False})
            logging.debug(f"response: {payload}")
            return web.json_response(payload)
        return wrapper
    return decorator


def _is_address(value: str) -> bool:
    return re.match("^0x[0-9a-fA-F]{40}$", value) is not None


async def _read_json_body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except (json.decoder.JSONDecodeError, UnicodeDecodeError):
        return {}
    return body if isinstance(body, dict) else {}


def _get_user(
    request: web.Request,
    body: dict[str, Any] | None = None,
    strip: bool = False,
) -> str:
    user = request.query.get("user", "")
    if user == "" and body is not None:
        user = str(body.get("user") or "")
    if user.strip() == "":
        raise InvalidRequestError("missing ?user=<string>")
    return user.strip() if strip else user


def _get_address_param(
    request: web.Request, name: str, error_message: str
) -> Address:
    value = request.query.get(name, "")
    if not _is_address(value):
        raise InvalidRequestError(error_message)
    return Address(value)


def _get_amount(request: web.Request) -> str:
    amount = request.query.get("amount", "") or DEFAULT_AMOUNT
    try:
        base_units = parse_units(amount)
    except ValueError as excp:
        raise InvalidRequestError(str(excp))
    if base_units > MAX_UINT256:
        raise InvalidRequestError(f"amount {amount} exceeds uint256")
    return amount


def _get_uint_param(name: str, value: str) -> int:
    try:
        ivalue = int(value, 0)
    except ValueError:
        raise InvalidRequestError(f"invalid {name}: {value}")
    if ivalue < 0:
        raise InvalidRequestError(f"invalid {name}: {value}")
    return ivalue


async def _guarded(awaitable: Awaitable[Any], default: Any = None) -> Any:
    try:
        return await awaitable
    except RelayerException as excp:
        logging.debug(f"debug read failed: {str(excp)}")
        return default


async def health(_: web.Request) -> web.Response:
    RESPONSE_LOG.set({"is_error": False})
    return web.Response(text="ok")


async def check_health(
    node_urls_to_check: list[str],
    target_chain_id_hex: str | None,
    relayer: Address | None,
    min_balance: int,
    _: web.Request
) -> web.Response:
    nodes_success, nodes_results = await check_node_health(
        node_urls_to_check, target_chain_id_hex)

    relayer_balance_success, relayer_balance_results = await check_relayer_balance(
        node_urls_to_check, relayer, min_balance)

    results = dict()
    results["nodes_status"] = nodes_results
    results["relayer_balance"] = relayer_balance_results
    results_str = json.dumps(results)

    RESPONSE_LOG.set({"is_error": False})
    all_ok = nodes_success and relayer_balance_success
    if all_ok:
        return web.Response(text=results_str, content_type="application/json")
    else:
        return web.Response(
            text=results_str, content_type="application/json", status=503)


@json_endpoint()
async def chain(context: RelayerContext, _: web.Request) -> dict[str, Any]:
    read_node_urls = context.config.read_node_urls
    timeout = context.config.rpc_timeout
    chain_id, latest_block = await asyncio.gather(
        get_chain_id(read_node_urls, timeout),
        get_block_number(read_node_urls, timeout),
    )
    return {
        "chainId": str(chain_id),
        "name": CHAIN_NAMES.get(chain_id, "unknown"),
        "latestBlock": str(latest_block),
    }


@json_endpoint()
async def relayer(context: RelayerContext, _: web.Request) -> dict[str, Any]:
    relayer_address = context.transaction_sender.require_relayer_address()
    balance = await get_balance(
        context.config.read_node_urls,
        relayer_address,
        context.config.rpc_timeout,
    )
    return {
        "address": relayer_address,
        "balanceWei": str(balance),
        "balance": str(from_wei(balance, "ether")),
    }


@json_endpoint(REQUEST_TIME_api_aa_address)
async def aa_address(
    context: RelayerContext, request: web.Request
) -> dict[str, Any]:
    user_id = _get_user(request)
    factory = context.get_factory()
    account = await context.account_resolver.resolve_account(factory, user_id)
    return account.get_account_json()


@json_endpoint()
async def aa_debug(
    context: RelayerContext, request: web.Request
) -> dict[str, Any]:
    user_id = _get_user(request, strip=True)
    factory = context.get_factory()
    config = context.config
    read_node_urls = config.read_node_urls
    timeout = config.rpc_timeout

    account = await context.account_resolver.resolve_account(
        factory, user_id, with_implementation=False)
    sender = account.sender

    entrypoint_nonce = None
    entrypoint_has_code = None
    if config.entrypoint is not None:
        get_nonce_function = context.user_operation_builder.get_nonce_function

        async def _read_nonce() -> int:
            raw_nonce = await eth_call(
                read_node_urls,
                config.entrypoint,
                get_nonce_function.encode([sender, 0]),
                timeout=timeout,
            )
            return get_nonce_function.decode_result(raw_nonce)[0]

        entrypoint_code, nonce = await asyncio.gather(
            _guarded(get_code(read_node_urls, config.entrypoint, timeout)),
            _guarded(_read_nonce()),
        )
        entrypoint_has_code = has_code(entrypoint_code)
        if nonce is not None:
            entrypoint_nonce = str(nonce)

    price = None
    allowance = None
    if config.token_address is not None:
        reward_token = context.get_reward_token()
        price, allowance = await asyncio.gather(
            _guarded(reward_token.get_price()),
            _guarded(reward_token.get_minter_allowance(sender)),
        )

    sender_balance = await _guarded(
        get_balance(read_node_urls, sender, timeout), 0)
    paymaster_balance = 0
    if config.paymaster_address is not None:
        paymaster_balance = await _guarded(
            get_balance(read_node_urls, config.paymaster_address, timeout), 0)

    return {
        "userId": user_id,
        "sender": sender,
        "deployed": account.deployed,
        "entryPoint": config.entrypoint,
        "entrypointHasCode": entrypoint_has_code,
        "entryPointNonce": entrypoint_nonce,
        "token": config.token_address,
        "pricePerTokenWei": None if price is None else str(price),
        "minterAllowance": None if allowance is None else str(allowance),
        "balances": {
            "senderWei": str(sender_balance),
            "paymasterWei": str(paymaster_balance),
        },
    }


@json_endpoint(REQUEST_TIME_api_aa_deploy)
async def aa_deploy(
    context: RelayerContext, request: web.Request
) -> dict[str, Any]:
    body = await _read_json_body(request)
    user_id = _get_user(request, body)
    owner = request.query.get("owner", "") or str(body.get("owner") or "")
    if owner != "" and not _is_address(owner):
        raise InvalidRequestError(f"invalid owner: {owner}")
    factory = context.get_factory()

    result = await context.account_deployer.deploy_account(
        factory, user_id, Address(owner) if owner != "" else None)
    return result.get_deployment_json()


@json_endpoint(REQUEST_TIME_api_aa_create)
async def aa_create(
    context: RelayerContext, request: web.Request
) -> dict[str, Any]:
    user_id = _get_user(request)
    factory = context.get_factory()

    result = await context.account_deployer.deploy_account(factory, user_id)
    if result.already_deployed:
        return {
            "ok": True,
            "user": user_id,
            "smartAccount": result.sender,
            "alreadyDeployed": True,
        }
    response = {
        "ok": True,
        "user": user_id,
        "smartAccount": result.sender,
        "deployed": result.deployed,
        "txHash": result.transaction_hash,
    }
    if result.warning is not None:
        response["warning"] = result.warning
    return response


@json_endpoint()
async def preflight(context: RelayerContext, _: web.Request) -> dict[str, Any]:
    entrypoint = context.get_entrypoint()
    bundler_client = context.get_bundler_client()

    async def _client_version() -> str | None:
        try:
            return await bundler_client.client_version()
        except RpcError as excp:
            logging.warning(f"web3_clientVersion failed: {str(excp)}")
            return None

    entrypoint_code, client_version = await asyncio.gather(
        get_code(
            context.config.read_node_urls,
            entrypoint,
            context.config.rpc_timeout,
        ),
        _client_version(),
    )
    return {
        "entrypoint": entrypoint,
        "entrypointHasCode": has_code(entrypoint_code),
        "bundlerUrl": bundler_client.bundler_url,
        "bundlerClientVersion": client_version,
    }


@json_endpoint(REQUEST_TIME_api_aa_gasless_mint_draft)
async def gasless_mint_draft(
    context: RelayerContext, request: web.Request
) -> dict[str, Any]:
    user_id = _get_user(request)
    receiver = _get_address_param(request, "to", "bad ?to=")
    amount = _get_amount(request)
    entrypoint = context.get_entrypoint()

    user_operation, account = (
        await context.user_operation_builder.build_gasless_mint(
            user_id,
            context.get_factory(),
            context.get_token_address(),
            receiver,
            amount,
            context.get_paymaster(),
            entrypoint,
        )
    )
    return {
        "entryPoint": entrypoint,
        "sender": account.sender,
        "deployed": account.deployed,
        "usedBytes32": account.used_fallback,
        "receiver": receiver,
        "amount": amount,
        "userOp": user_operation.get_user_operation_json(),
    }


@json_endpoint(REQUEST_TIME_api_aa_gasless_mint_send)
async def gasless_mint_send(
    context: RelayerContext, request: web.Request
) -> dict[str, Any]:
    user_id = _get_user(request)
    receiver = _get_address_param(request, "to", "bad ?to=")
    amount = _get_amount(request)
    factory = context.get_factory()
    token = context.get_token_address()
    paymaster = context.get_paymaster()
    entrypoint = context.get_entrypoint()
    bundler_client = context.get_bundler_client()

    user_operation, account = (
        await context.user_operation_builder.build_gasless_mint(
            user_id, factory, token, receiver, amount, paymaster, entrypoint
        )
    )
    user_operation_hash = await bundler_client.send_user_operation(
        user_operation, entrypoint)
    return {
        "ok": True,
        "userOpHash": user_operation_hash,
        "sender": account.sender,
        "receiver": receiver,
        "amount": amount,
    }


@json_endpoint()
async def token_info(context: RelayerContext, _: web.Request) -> dict[str, Any]:
    info = await context.get_reward_token().get_info()
    return info.get_token_json()


@json_endpoint()
async def token_set_price(
    context: RelayerContext, request: web.Request
) -> dict[str, Any]:
    reward_token = context.get_reward_token()
    wei = request.query.get("wei", "")
    if wei == "":
        raise InvalidRequestError("missing wei")
    price_wei = _get_uint_param("wei", wei)

    transaction_hash = await reward_token.set_price(price_wei)
    return {"status": "price updated", "wei": wei, "tx": transaction_hash}


@json_endpoint()
async def token_set_minter(
    context: RelayerContext, request: web.Request
) -> dict[str, Any]:
    reward_token = context.get_reward_token()
    wallet = request.query.get("wallet", "")
    allowance = request.query.get("allowance", "")
    if wallet == "" or allowance == "":
        raise InvalidRequestError("missing wallet or allowance")
    if not _is_address(wallet):
        raise InvalidRequestError("bad wallet")
    allowance_value = _get_uint_param("allowance", allowance)

    transaction_hash = await reward_token.set_minter_allowance(
        Address(wallet), allowance_value)
    return {
        "status": "minter added",
        "wallet": wallet,
        "allowance": allowance,
        "tx": transaction_hash,
    }


@json_endpoint()
async def token_mint(
    context: RelayerContext, request: web.Request
) -> dict[str, Any]:
    reward_token = context.get_reward_token()
    to = _get_address_param(request, "wallet", "bad wallet")
    amount = _get_amount(request)

    transaction_hash = await reward_token.mint(to, amount)
    return {
        "status": "minted",
        "to": to,
        "amount": amount,
        "txHash": transaction_hash,
    }


@json_endpoint()
async def token_buy(
    context: RelayerContext, request: web.Request
) -> dict[str, Any]:
    reward_token = context.get_reward_token()
    to = _get_address_param(request, "wallet", "bad wallet")
    amount = _get_uint_param(
        "amount", request.query.get("amount", "") or DEFAULT_AMOUNT)

    transaction_hash, paid_wei = await reward_token.buy(to, amount)
    return {
        "status": "bought",
        "to": to,
        "amount": str(amount),
        "paidWei": str(paid_wei),
        "txHash": transaction_hash,
    }


@json_endpoint()
async def paymaster_balance(
    context: RelayerContext, _: web.Request
) -> dict[str, Any]:
    paymaster = context.get_paymaster()
    balance = await get_balance(
        context.config.read_node_urls, paymaster, context.config.rpc_timeout)
    return {
        "paymaster": paymaster,
        "balanceWei": str(balance),
        "balance": str(from_wei(balance, "ether")),
    }


def create_app(context: RelayerContext) -> web.Application:
    config = context.config
    app = web.Application()
    app[RELAYER_CONTEXT] = context

    app.router.add_route("GET", "/health", health)
    app.router.add_route(
        "GET",
        "/health/nodes",
        partial(
            check_health,
            config.read_node_urls,
            None if config.chain_id is None else hex(config.chain_id),
            config.relayer_address,
            config.min_relayer_balance,
        )
    )
    app.router.add_route("GET", "/chain", chain)
    app.router.add_route("GET", "/relayer", relayer)
    app.router.add_route("GET", "/api/aa/address", aa_address)
    app.router.add_route("GET", "/api/aa/debug", aa_debug)
    app.router.add_route("POST", "/api/aa/deploy", aa_deploy)
    app.router.add_route("GET", "/api/aa/create", aa_create)
    app.router.add_route("GET", "/api/4337/preflight", preflight)
    app.router.add_route("GET", "/api/aa/gasless-mint/draft", gasless_mint_draft)
    app.router.add_route("GET", "/api/aa/gasless-mint/send", gasless_mint_send)
    app.router.add_route("GET", "/api/token/info", token_info)
    app.router.add_route("GET", "/api/token/set-price", token_set_price)
    app.router.add_route("GET", "/api/token/set-minter", token_set_minter)
    app.router.add_route("GET", "/api/token/mint", token_mint)
    app.router.add_route("GET", "/api/token/buy", token_buy)
    app.router.add_route("GET", "/api/paymaster/balance", paymaster_balance)

    cors = aiohttp_cors.setup(
        app,
        defaults={
            config.rpc_cors_domain: aiohttp_cors.ResourceOptions(
                allow_credentials=True, expose_headers="*", allow_headers="*"
            )
        },
    )
    for route in list(app.router.routes()):
        cors.add(route)
    return app


async def run_relayer_http_server(
    context: RelayerContext,
    host: str = "localhost",
    port: int = 3000,
) -> web.AppRunner:
    logging.info(f"Starting HTTP API Server at: {host}:{port}")
    app = create_app(context)
    runner = web.AppRunner(
        app,
        access_log_class=AccessLogger
    )
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    return runner
