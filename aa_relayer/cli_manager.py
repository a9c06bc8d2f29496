import logging
import os
import re
from argparse import ArgumentParser, ArgumentTypeError, Namespace
from dataclasses import dataclass
from typing import TypeVar

from aa_relayer.exceptions import ConfigurationError

from .typing import Address
from .utils.import_key import (import_relayer_account,
                               public_address_from_private_key)

T = TypeVar("T")


@dataclass()
class RelayerConfig:
    rpc_url: str
    rpc_port: int
    rpc_cors_domain: str
    ethereum_node_url: str | None
    read_node_urls: list[str]
    bundler_url: str | None
    entrypoint: Address | None
    factory_address: Address | None
    token_address: Address | None
    paymaster_address: Address | None
    relayer_pk: str | None
    relayer_address: Address | None
    chain_id: int | None
    is_legacy_mode: bool
    artifacts_dir: str | None
    rpc_timeout: float
    receipt_timeout: float
    receipt_poll_interval: float
    max_fee_per_gas_percentage_multiplier: int
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    paymaster_verification_gas_limit: int | None
    paymaster_post_op_gas_limit: int | None
    use_entrypoint_nonce: bool
    is_metrics: bool
    metrics_port: int
    health_check_interval: int
    min_relayer_balance: int
    is_verbose: bool


def address(ep: str):
    address_pattern = "^0x[0-9,a-f,A-F]{40}$"
    if not isinstance(ep, str) or re.match(address_pattern, ep) is None:
        raise ArgumentTypeError(f"Wrong address format : {ep}")
    return ep


def unsigned_int(value):
    ivalue = int(value, 0) if isinstance(value, str) else int(value)
    if ivalue < 0:
        raise ArgumentTypeError(
                "%s is an invalid unsigned int value" % value)
    return ivalue


def positive_float(value):
    fvalue = float(value)
    if fvalue <= 0:
        raise ArgumentTypeError(
                "%s is an invalid positive value" % value)
    return fvalue


def url_no_port(ep: str):
    address_pattern = "^(((https|http)://)?((?:[a-zA-Z0-9-]+\\.)+[a-zA-Z]{2,}|(?:\\d{1,3}\\.){3}\\d{1,3}|localhost))$"
    if not isinstance(ep, str) or re.match(address_pattern, ep) is None:
        raise ArgumentTypeError(f"Wrong url format : {ep}")
    return ep


def _get_env_or_default(env_var, default, value_type):
    """
    Helper function to get the value from an environment variable or return the default value.
    Supports single values or lists (for nargs="+" arguments).
    Empty values are treated as unset.
    """
    value = os.getenv(env_var, None)
    if value is not None and value != "":
        if value_type == list:
            return [item for item in value.split(",") if item != ""]
        return value_type(value)
    return default


def _get_first_env(*env_vars: str) -> str | None:
    for env_var in env_vars:
        value = os.getenv(env_var, None)
        if value:
            return value
    return None


def _env_flag(value: str) -> bool:
    return value.lower() == "true"


def require_setting(value: T | None, env_name: str) -> T:
    if value is None or value == "":
        raise ConfigurationError(f"{env_name} not set")
    return value


def initialize_argument_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="aa-relayer",
        description=(
            "ERC-4337 relayer - deterministic smart accounts, "
            "relayer-funded deployment and paymaster sponsored UserOperations"
        ),
    )

    group = parser.add_mutually_exclusive_group(required=False)

    group.add_argument(
        "--relayer_secret",
        type=str,
        help="Relayer private key",
        nargs="?",
        default=_get_env_or_default("RELAYER_PK", None, str),
    )

    group.add_argument(
        "--keystore_file_path",
        type=str,
        help="Relayer Keystore file path",
        nargs="?",
        default=_get_env_or_default("RELAYER_KEYSTORE_FILE_PATH", None, str),
    )

    parser.add_argument(
        "--keystore_file_password",
        type=str,
        help="Relayer Keystore file password - defaults to no password",
        nargs="?",
        const="",
        default=_get_env_or_default("RELAYER_KEYSTORE_FILE_PASSWORD", "", str),
    )

    parser.add_argument(
        "--rpc_url",
        type=url_no_port,
        help="HTTP API serve url - defaults to 0.0.0.0",
        nargs="?",
        const="0.0.0.0",
        default=_get_env_or_default("RELAYER_HOST", "0.0.0.0", str),
    )

    parser.add_argument(
        "--rpc_port",
        type=unsigned_int,
        help="HTTP API serve port - defaults to 3000",
        nargs="?",
        const=3000,
        default=_get_env_or_default("PORT", 3000, unsigned_int),
    )

    parser.add_argument(
        "--rpc_cors_domain",
        type=str,
        help="HTTP API cors allowed domain - defaults to *",
        nargs="?",
        const="*",
        default=_get_env_or_default("RELAYER_CORS_DOMAIN", "*", str),
    )

    parser.add_argument(
        "--ethereum_node_url",
        type=str,
        help=(
            "Eth Client JSON-RPC Url used for transactions - "
            "defaults to READ_RPC, BUNDLER_URL or RPC_URL"
        ),
        nargs="?",
        default=_get_first_env("READ_RPC", "BUNDLER_URL", "RPC_URL"),
    )

    parser.add_argument(
        "--read_node_urls",
        type=str,
        help=(
            "Eth Client JSON-RPC Urls used for reads, tried in order - "
            "defaults to READ_RPC_1 and READ_RPC_2, or ethereum_node_url"
        ),
        nargs="+",
        default=[
            url for url in (os.getenv("READ_RPC_1"), os.getenv("READ_RPC_2"))
            if url
        ],
    )

    parser.add_argument(
        "--bundler_url",
        type=str,
        help="Bundler JSON-RPC Url",
        nargs="?",
        default=_get_env_or_default("BUNDLER_URL", None, str),
    )

    parser.add_argument(
        "--entrypoint",
        type=address,
        help="EntryPoint contract address",
        nargs="?",
        default=_get_env_or_default("ENTRYPOINT", None, str),
    )

    parser.add_argument(
        "--factory",
        type=address,
        help="Account factory contract address",
        nargs="?",
        default=_get_env_or_default("AA_FACTORY", None, str),
    )

    parser.add_argument(
        "--token",
        type=address,
        help="Reward token contract address",
        nargs="?",
        default=_get_env_or_default("REWARD_TOKEN", None, str),
    )

    parser.add_argument(
        "--paymaster",
        type=address,
        help="Paymaster contract address",
        nargs="?",
        default=_get_env_or_default("PAYMASTER", None, str),
    )

    parser.add_argument(
        "--chain_id",
        type=unsigned_int,
        help="chain id - defaults to the eth_chainId of the node",
        nargs="?",
        default=_get_env_or_default("RELAYER_CHAIN_ID", None, unsigned_int),
    )

    parser.add_argument(
        "--legacy_mode",
        help="for networks that doesn't support EIP-1559",
        nargs="?",
        const=True,
        default=_get_env_or_default("RELAYER_LEGACY_MODE", False, _env_flag),
    )

    parser.add_argument(
        "--artifacts_dir",
        type=str,
        help=(
            "Compiled contracts artifacts directory - "
            "defaults to the ABIs bundled with the relayer"
        ),
        nargs="?",
        default=_get_env_or_default("RELAYER_ARTIFACTS_DIR", None, str),
    )

    parser.add_argument(
        "--rpc_timeout",
        type=positive_float,
        help="Timeout in seconds for every outbound JSON-RPC call, defaults to 8",
        nargs="?",
        const=8,
        default=_get_env_or_default("RELAYER_RPC_TIMEOUT", 8, positive_float),
    )

    parser.add_argument(
        "--receipt_timeout",
        type=positive_float,
        help="Seconds to wait for a relayer transaction receipt, defaults to 120",
        nargs="?",
        const=120,
        default=_get_env_or_default("RELAYER_RECEIPT_TIMEOUT", 120, positive_float),
    )

    parser.add_argument(
        "--receipt_poll_interval",
        type=positive_float,
        help="Seconds between transaction receipt polls, defaults to 1",
        nargs="?",
        const=1,
        default=_get_env_or_default("RELAYER_RECEIPT_POLL_INTERVAL", 1, positive_float),
    )

    parser.add_argument(
        "--max_fee_per_gas_percentage_multiplier",
        type=unsigned_int,
        help=(
            "modify the relayer transactions max_fee_per_gas value as the following formula "
            "[max_fee_per_gas = eth_gasPrice * "
            "max_fee_per_gas_percentage_multiplier /100], defaults to 110"
        ),
        nargs="?",
        const=110,
        default=_get_env_or_default("RELAYER_MAX_FEE_PER_GAS_PERCENTAGE_MULTIPLIER", 110, unsigned_int),
    )

    parser.add_argument(
        "--call_gas_limit",
        type=unsigned_int,
        help="UserOperation callGasLimit, defaults to 0x5208",
        nargs="?",
        default=_get_env_or_default("RELAYER_CALL_GAS_LIMIT", 0x5208, unsigned_int),
    )

    parser.add_argument(
        "--verification_gas_limit",
        type=unsigned_int,
        help="UserOperation verificationGasLimit, defaults to 0x989680",
        nargs="?",
        default=_get_env_or_default("RELAYER_VERIFICATION_GAS_LIMIT", 0x989680, unsigned_int),
    )

    parser.add_argument(
        "--pre_verification_gas",
        type=unsigned_int,
        help="UserOperation preVerificationGas, defaults to 0x186a0",
        nargs="?",
        default=_get_env_or_default("RELAYER_PRE_VERIFICATION_GAS", 0x186a0, unsigned_int),
    )

    parser.add_argument(
        "--max_fee_per_gas",
        type=unsigned_int,
        help="UserOperation maxFeePerGas, defaults to 0x3b9aca00",
        nargs="?",
        default=_get_env_or_default("RELAYER_MAX_FEE_PER_GAS", 0x3b9aca00, unsigned_int),
    )

    parser.add_argument(
        "--max_priority_fee_per_gas",
        type=unsigned_int,
        help="UserOperation maxPriorityFeePerGas, defaults to 0x3b9aca00",
        nargs="?",
        default=_get_env_or_default("RELAYER_MAX_PRIORITY_FEE_PER_GAS", 0x3b9aca00, unsigned_int),
    )

    parser.add_argument(
        "--paymaster_verification_gas_limit",
        type=unsigned_int,
        help="UserOperation paymasterVerificationGasLimit - omitted if not set",
        nargs="?",
        default=_get_env_or_default("RELAYER_PAYMASTER_VERIFICATION_GAS_LIMIT", None, unsigned_int),
    )

    parser.add_argument(
        "--paymaster_post_op_gas_limit",
        type=unsigned_int,
        help="UserOperation paymasterPostOpGasLimit - omitted if not set",
        nargs="?",
        default=_get_env_or_default("RELAYER_PAYMASTER_POST_OP_GAS_LIMIT", None, unsigned_int),
    )

    parser.add_argument(
        "--disable_entrypoint_nonce",
        help="use a zero nonce instead of reading EntryPoint.getNonce",
        nargs="?",
        const=True,
        default=_get_env_or_default("RELAYER_DISABLE_ENTRYPOINT_NONCE", False, _env_flag),
    )

    parser.add_argument(
        "--metrics",
        help="enable metrics collection",
        nargs="?",
        const=True,
        default=_get_env_or_default("RELAYER_METRICS", False, _env_flag),
    )

    parser.add_argument(
        "--metrics_port",
        type=unsigned_int,
        help="metrics server port - defaults to 8000",
        nargs="?",
        const=8000,
        default=_get_env_or_default("RELAYER_METRICS_PORT", 8000, unsigned_int),
    )

    parser.add_argument(
        "--health_check_interval",
        type=int,
        help=(
            "Interval in seconds to execute health checks. "
            "Defaults to 0 which disables them"
        ),
        nargs="?",
        const=600,
        default=_get_env_or_default("RELAYER_HEALTH_CHECK_INTERVAL", 0, int),
    )

    parser.add_argument(
        "--min_relayer_balance",
        type=int,
        help=(
            "Minimum relayer balance in wei, "
            "if crossed the relayer will create warning logs"
        ),
        nargs="?",
        const=10_000_000_000_000_000,
        default=_get_env_or_default("RELAYER_MIN_BALANCE", 10_000_000_000_000_000, int),
    )

    parser.add_argument(
        "--verbose",
        help="show debug log",
        nargs="?",
        const=True,
        default=_get_env_or_default("RELAYER_VERBOSE", False, _env_flag),
    )

    return parser


def parse_args(cmd_args: list[str]) -> RelayerConfig:
    argument_parser: ArgumentParser = initialize_argument_parser()
    args = argument_parser.parse_args(cmd_args)
    if args.relayer_secret and args.keystore_file_path:
        argument_parser.error("You can only specify either --relayer_secret or --keystore_file_path but not both at the same time")
    if args.ethereum_node_url is None and len(args.read_node_urls) == 0:
        argument_parser.error("You must specify an Eth node with --ethereum_node_url or set RPC_URL, READ_RPC or BUNDLER_URL environment variables.")
    return get_config(args)


def init_logging(args: Namespace):
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s.%(msecs)03d %(levelname)s %(message)s",
        datefmt="%b %d %H:%M:%S",
    )

    logging.getLogger("aa_relayer")


def init_relayer_address_and_secret(
    args: Namespace
) -> tuple[Address | None, str | None]:
    if args.keystore_file_path is not None:
        relayer_address, relayer_pk = import_relayer_account(
            args.keystore_file_password, args.keystore_file_path
        )
    elif args.relayer_secret is not None:
        relayer_pk = args.relayer_secret
        relayer_address = public_address_from_private_key(relayer_pk)
    else:
        logging.warning(
            "RELAYER_PK not set - deployment and token endpoints are disabled")
        return None, None
    return Address(relayer_address), relayer_pk


def get_config(args: Namespace) -> RelayerConfig:
    init_logging(args)

    relayer_address, relayer_pk = init_relayer_address_and_secret(args)

    if len(args.read_node_urls) > 0:
        read_node_urls = args.read_node_urls
    else:
        read_node_urls = [args.ethereum_node_url]
    ethereum_node_url = args.ethereum_node_url
    if ethereum_node_url is None:
        ethereum_node_url = read_node_urls[0]

    ret = RelayerConfig(
        rpc_url=args.rpc_url,
        rpc_port=args.rpc_port,
        rpc_cors_domain=args.rpc_cors_domain,
        ethereum_node_url=ethereum_node_url,
        read_node_urls=read_node_urls,
        bundler_url=args.bundler_url,
        entrypoint=args.entrypoint,
        factory_address=args.factory,
        token_address=args.token,
        paymaster_address=args.paymaster,
        relayer_pk=relayer_pk,
        relayer_address=relayer_address,
        chain_id=args.chain_id,
        is_legacy_mode=bool(args.legacy_mode),
        artifacts_dir=args.artifacts_dir,
        rpc_timeout=args.rpc_timeout,
        receipt_timeout=args.receipt_timeout,
        receipt_poll_interval=args.receipt_poll_interval,
        max_fee_per_gas_percentage_multiplier=(
            args.max_fee_per_gas_percentage_multiplier),
        call_gas_limit=args.call_gas_limit,
        verification_gas_limit=args.verification_gas_limit,
        pre_verification_gas=args.pre_verification_gas,
        max_fee_per_gas=args.max_fee_per_gas,
        max_priority_fee_per_gas=args.max_priority_fee_per_gas,
        paymaster_verification_gas_limit=args.paymaster_verification_gas_limit,
        paymaster_post_op_gas_limit=args.paymaster_post_op_gas_limit,
        use_entrypoint_nonce=not args.disable_entrypoint_nonce,
        is_metrics=bool(args.metrics),
        metrics_port=args.metrics_port,
        health_check_interval=args.health_check_interval,
        min_relayer_balance=args.min_relayer_balance,
        is_verbose=bool(args.verbose),
    )

    logging.info(
        "Starting *** aa-relayer *** - "
        f"write node {ret.ethereum_node_url}, "
        f"{len(ret.read_node_urls)} read nodes"
    )

    return ret
