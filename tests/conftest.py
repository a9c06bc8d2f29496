import pytest
import pytest_asyncio
import rlp
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer
from eth_abi import decode, encode
from eth_account import Account
from eth_utils import keccak, to_checksum_address

from aa_relayer.cli_manager import parse_args
from aa_relayer.rpc.http_server import create_app, create_relayer_context

RELAYER_PK = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
RELAYER_ADDRESS = Account.from_key(RELAYER_PK).address

CHAIN_ID = 1337
FACTORY = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
ENTRYPOINT = "0x0000000071727De22E5E9d8BAf0edAc6f37da032"
TOKEN = "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512"
PAYMASTER = "0x9fE46736679d2D9a65F0992F2272dE9f3c7fa6e0"
IMPLEMENTATION = "0xCf7Ed3AccA5a467e9e704C703E8D87F634fB0Fc9"
RECEIVER = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
DEPLOYED_CODE = "0x6080604052"
GAS_PRICE = 1_000_000_000


def selector(signature: str) -> bytes:
    return keccak(text=signature)[:4]


def predicted_address(factory: str, salt: bytes) -> str:
    return to_checksum_address(
        keccak(bytes.fromhex(factory[2:]) + salt)[12:])


def account_address(user_id: str, factory: str = FACTORY) -> str:
    return predicted_address(factory, keccak(text=user_id))


def abi_result(types: list[str], values: list) -> str:
    return "0x" + encode(types, values).hex()


class RevertError(Exception):
    pass


class FakeChain:
    """
    In-memory chain node answering the JSON-RPC calls the relayer makes
    against the factory, entry point and reward token.
    """

    def __init__(self):
        self.url = None
        self.block_number = 100
        self.codes = {
            FACTORY.lower(): DEPLOYED_CODE,
            ENTRYPOINT.lower(): DEPLOYED_CODE,
            TOKEN.lower(): DEPLOYED_CODE,
        }
        self.balances = {
            RELAYER_ADDRESS.lower(): 10 * 10**18,
            PAYMASTER.lower(): 5 * 10**17,
        }
        self.transaction_counts = {}
        self.entrypoint_nonces = {}
        self.raw_nonce_result = None
        self.account_owners = {}

        self.string_variant_enabled = True
        self.zero_address_from_string = False
        self.implementation_enabled = True
        self.deploy_on_send = True
        self.revert_transactions = False
        self.receipt_delay = 0

        self.token_price = 10**15
        self.token_owner = RELAYER_ADDRESS
        self.token_total_supply = 0
        self.token_balances = {}
        self.minter_allowances = {}

        self.requests = []
        self.transactions = []
        self.receipts = {}
        self.receipt_polls = {}

    def count(self, method: str) -> int:
        return len([request for request in self.requests if request[0] == method])

    def deploy(self, address: str) -> None:
        self.codes[address.lower()] = DEPLOYED_CODE

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/", self.handle)
        return app

    async def handle(self, request: web.Request) -> web.Response:
        body = await request.json()
        method = body["method"]
        params = body.get("params", [])
        self.requests.append((method, params))

        handler = getattr(self, "rpc_" + method, None)
        if handler is None:
            return web.json_response(
                {
                    "jsonrpc": "2.0",
                    "id": body["id"],
                    "error": {
                        "code": -32601,
                        "message": f"the method {method} does not exist",
                    },
                }
            )
        try:
            result = handler(*params)
        except RevertError as excp:
            return web.json_response(
                {
                    "jsonrpc": "2.0",
                    "id": body["id"],
                    "error": {"code": 3, "message": str(excp), "data": "0x"},
                }
            )
        return web.json_response(
            {"jsonrpc": "2.0", "id": body["id"], "result": result})

    def rpc_eth_chainId(self):
        return hex(CHAIN_ID)

    def rpc_eth_blockNumber(self):
        return hex(self.block_number)

    def rpc_eth_getCode(self, address, block="latest"):
        return self.codes.get(address.lower(), "0x")

    def rpc_eth_getBalance(self, address, block="latest"):
        return hex(self.balances.get(address.lower(), 0))

    def rpc_eth_getTransactionCount(self, address, block="latest"):
        return hex(self.transaction_counts.get(address.lower(), 0))

    def rpc_eth_gasPrice(self):
        return hex(GAS_PRICE)

    def rpc_eth_maxPriorityFeePerGas(self):
        return hex(2 * GAS_PRICE)

    def rpc_eth_estimateGas(self, transaction, *args):
        return hex(100_000)

    def rpc_eth_call(self, call, block="latest"):
        to = call["to"].lower()
        data = bytes.fromhex(call["data"][2:])
        function_selector, args = data[:4], data[4:]
        if to == FACTORY.lower():
            return self._factory_call(function_selector, args)
        if to == ENTRYPOINT.lower():
            if function_selector == selector("getNonce(address,uint192)"):
                if self.raw_nonce_result is not None:
                    return self.raw_nonce_result
                sender, _ = decode(["address", "uint192"], args)
                nonce = self.entrypoint_nonces.get(sender.lower(), 0)
                return abi_result(["uint256"], [nonce])
        if to == TOKEN.lower():
            return self._token_call(function_selector, args)
        raise RevertError("execution reverted")

    def _factory_call(self, function_selector: bytes, args: bytes) -> str:
        if function_selector == selector("getAddress(string)"):
            if not self.string_variant_enabled:
                raise RevertError("execution reverted")
            (user_id,) = decode(["string"], args)
            if self.zero_address_from_string:
                return abi_result(["address"], [ZERO_ADDRESS])
            return abi_result(
                ["address"], [predicted_address(FACTORY, keccak(text=user_id))])
        if function_selector == selector("getAddress(bytes32)"):
            (salt,) = decode(["bytes32"], args)
            return abi_result(["address"], [predicted_address(FACTORY, salt)])
        if function_selector == selector("implementation()"):
            if self.implementation_enabled:
                return abi_result(["address"], [IMPLEMENTATION])
        raise RevertError("execution reverted")

    def _token_call(self, function_selector: bytes, args: bytes) -> str:
        if function_selector == selector("name()"):
            return abi_result(["string"], ["Reward Token"])
        if function_selector == selector("symbol()"):
            return abi_result(["string"], ["RWD"])
        if function_selector == selector("decimals()"):
            return abi_result(["uint8"], [18])
        if function_selector == selector("owner()"):
            return abi_result(["address"], [self.token_owner])
        if function_selector == selector("totalSupply()"):
            return abi_result(["uint256"], [self.token_total_supply])
        if function_selector == selector("pricePerTokenWei()"):
            return abi_result(["uint256"], [self.token_price])
        if function_selector == selector("minterAllowance(address)"):
            (minter,) = decode(["address"], args)
            return abi_result(
                ["uint256"], [self.minter_allowances.get(minter.lower(), 0)])
        if function_selector == selector("balanceOf(address)"):
            (account,) = decode(["address"], args)
            return abi_result(
                ["uint256"], [self.token_balances.get(account.lower(), 0)])
        raise RevertError("execution reverted")

    def rpc_eth_sendRawTransaction(self, raw_transaction):
        raw = bytes.fromhex(raw_transaction[2:])
        sender = Account.recover_transaction(raw_transaction)
        if raw[0] == 2:
            fields = rlp.decode(raw[1:])
            nonce, to, value, data = fields[1], fields[5], fields[6], fields[7]
            transaction_type = 2
        else:
            fields = rlp.decode(raw)
            nonce, to, value, data = fields[0], fields[3], fields[4], fields[5]
            transaction_type = 0
        transaction_hash = "0x" + keccak(raw).hex()
        transaction = {
            "hash": transaction_hash,
            "type": transaction_type,
            "from": sender,
            "to": to_checksum_address(to),
            "nonce": int.from_bytes(nonce, "big"),
            "value": int.from_bytes(value, "big"),
            "data": data,
        }
        self.transactions.append(transaction)
        self.transaction_counts[sender.lower()] = (
            self.transaction_counts.get(sender.lower(), 0) + 1)

        self.block_number += 1
        status = "0x0" if self.revert_transactions else "0x1"
        if not self.revert_transactions:
            self._apply(transaction)
        self.receipts[transaction_hash] = {
            "transactionHash": transaction_hash,
            "blockNumber": hex(self.block_number),
            "status": status,
        }
        return transaction_hash

    def rpc_eth_getTransactionReceipt(self, transaction_hash):
        polls = self.receipt_polls.get(transaction_hash, 0)
        self.receipt_polls[transaction_hash] = polls + 1
        if polls < self.receipt_delay:
            return None
        return self.receipts.get(transaction_hash)

    def _apply(self, transaction: dict) -> None:
        data = transaction["data"]
        function_selector, args = data[:4], data[4:]
        to = transaction["to"].lower()
        if to == FACTORY.lower():
            if function_selector == selector("createAccount(string,address)"):
                user_id, owner = decode(["string", "address"], args)
                salt = keccak(text=user_id)
            elif function_selector == selector("createAccount(bytes32,address)"):
                salt, owner = decode(["bytes32", "address"], args)
            else:
                return
            account = predicted_address(FACTORY, salt)
            if self.deploy_on_send:
                self.deploy(account)
                self.account_owners[account.lower()] = to_checksum_address(owner)
        elif to == TOKEN.lower():
            if function_selector == selector("setPricePerTokenWei(uint256)"):
                (self.token_price,) = decode(["uint256"], args)
            elif function_selector == selector("setMinterAllowance(address,uint256)"):
                minter, allowance = decode(["address", "uint256"], args)
                self.minter_allowances[minter.lower()] = allowance
            elif function_selector == selector("mintTo(address,uint256)"):
                recipient, amount = decode(["address", "uint256"], args)
                self.token_balances[recipient.lower()] = (
                    self.token_balances.get(recipient.lower(), 0) + amount)
                self.token_total_supply += amount
            elif function_selector == selector("buy(address,uint256)"):
                recipient, amount = decode(["address", "uint256"], args)
                self.token_balances[recipient.lower()] = (
                    self.token_balances.get(recipient.lower(), 0) + amount)
                self.token_total_supply += amount


class FakeBundler:
    def __init__(self):
        self.url = None
        self.user_operations = []
        self.reject_with = None

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/", self.handle)
        return app

    async def handle(self, request: web.Request) -> web.Response:
        body = await request.json()
        method = body["method"]
        params = body.get("params", [])
        response = {"jsonrpc": "2.0", "id": body["id"]}
        if method == "eth_sendUserOperation":
            self.user_operations.append(params)
            if self.reject_with is not None:
                response["error"] = self.reject_with
            else:
                response["result"] = "0x" + keccak(
                    text=params[0]["sender"] + params[0]["nonce"]).hex()
        elif method == "web3_clientVersion":
            response["result"] = "fake-bundler/v0.1.0"
        else:
            response["error"] = {"code": -32601, "message": "method not found"}
        return web.json_response(response)


class FaultyNode:
    """
    A node that always fails, either with a non JSON http error or with
    a JSON-RPC error object.
    """

    def __init__(self, mode: str = "http_error"):
        self.url = None
        self.mode = mode
        self.hits = 0

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/", self.handle)
        return app

    async def handle(self, request: web.Request) -> web.Response:
        self.hits += 1
        if self.mode == "http_error":
            return web.Response(status=502, text="bad gateway")
        body = await request.json()
        return web.json_response(
            {
                "jsonrpc": "2.0",
                "id": body["id"],
                "error": {"code": -32005, "message": "daily request limit reached"},
            }
        )


async def _start(fake) -> TestServer:
    server = TestServer(fake.create_app())
    await server.start_server()
    fake.url = str(server.make_url("/"))
    return server


@pytest_asyncio.fixture
async def fake_chain():
    chain = FakeChain()
    server = await _start(chain)
    yield chain
    await server.close()


@pytest_asyncio.fixture
async def fake_bundler():
    bundler = FakeBundler()
    server = await _start(bundler)
    yield bundler
    await server.close()


@pytest_asyncio.fixture
async def faulty_node():
    node = FaultyNode("http_error")
    server = await _start(node)
    yield node
    await server.close()


@pytest_asyncio.fixture
async def limited_node():
    node = FaultyNode("rpc_error")
    server = await _start(node)
    yield node
    await server.close()


@pytest.fixture
def unreachable_url():
    return "http://127.0.0.1:1/"


@pytest.fixture
def relayer_args(fake_chain, fake_bundler):
    return [
        "--ethereum_node_url", fake_chain.url,
        "--bundler_url", fake_bundler.url,
        "--entrypoint", ENTRYPOINT,
        "--factory", FACTORY,
        "--token", TOKEN,
        "--paymaster", PAYMASTER,
        "--relayer_secret", RELAYER_PK,
        "--chain_id", str(CHAIN_ID),
        "--receipt_timeout", "2",
        "--receipt_poll_interval", "0.01",
    ]


@pytest.fixture
def relayer_config(relayer_args, monkeypatch):
    for env_var in ["READ_RPC_1", "READ_RPC_2"]:
        monkeypatch.delenv(env_var, raising=False)
    return parse_args(relayer_args)


@pytest.fixture
def relayer_context(relayer_config):
    return create_relayer_context(relayer_config)


@pytest_asyncio.fixture
async def relayer_client(relayer_context):
    client = TestClient(TestServer(create_app(relayer_context)))
    await client.start_server()
    yield client
    await client.close()
