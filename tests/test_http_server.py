import pytest

from conftest import (CHAIN_ID, ENTRYPOINT, FACTORY, IMPLEMENTATION,
                      PAYMASTER, RECEIVER, RELAYER_ADDRESS, TOKEN,
                      account_address)


@pytest.mark.asyncio
async def test_health(relayer_client):
    response = await relayer_client.get("/health")
    assert response.status == 200
    assert await response.text() == "ok"


@pytest.mark.asyncio
async def test_nodes_health(relayer_client):
    response = await relayer_client.get("/health/nodes")
    assert response.status == 200
    results = await response.json()
    assert results["relayer_balance"]["status"] == "OK"
    assert all(
        node["status"] == "OK" for node in results["nodes_status"].values())


@pytest.mark.asyncio
async def test_chain(relayer_client, fake_chain):
    response = await relayer_client.get("/chain")
    assert await response.json() == {
        "chainId": str(CHAIN_ID),
        "name": "unknown",
        "latestBlock": str(fake_chain.block_number),
    }


@pytest.mark.asyncio
async def test_relayer(relayer_client):
    response = await relayer_client.get("/relayer")
    assert await response.json() == {
        "address": RELAYER_ADDRESS,
        "balanceWei": str(10 * 10**18),
        "balance": "10",
    }


@pytest.mark.asyncio
async def test_aa_address(relayer_client):
    response = await relayer_client.get("/api/aa/address?user=alice")
    assert response.status == 200
    assert await response.json() == {
        "userId": "alice",
        "factory": FACTORY,
        "implementation": IMPLEMENTATION,
        "smartAccount": account_address("alice"),
        "deployed": False,
        "variant": "string",
    }


@pytest.mark.asyncio
async def test_aa_address_requires_user(relayer_client):
    response = await relayer_client.get("/api/aa/address")
    assert response.status == 400
    assert await response.json() == {"error": "missing ?user=<string>"}


@pytest.mark.asyncio
async def test_missing_factory_setting(relayer_client, relayer_context):
    relayer_context.config.factory_address = None
    response = await relayer_client.get("/api/aa/address?user=alice")
    assert response.status == 400
    assert await response.json() == {"error": "AA_FACTORY not set"}


@pytest.mark.asyncio
async def test_unreachable_read_nodes(
    relayer_client, relayer_context, unreachable_url
):
    relayer_context.account_resolver.read_node_urls = [unreachable_url]
    response = await relayer_client.get("/api/aa/address?user=alice")
    assert response.status == 500
    assert "reverted for both signatures" in (await response.json())["error"]


@pytest.mark.asyncio
async def test_aa_debug(relayer_client, fake_chain):
    fake_chain.entrypoint_nonces[account_address("alice").lower()] = 2
    response = await relayer_client.get("/api/aa/debug?user=alice")
    assert response.status == 200
    debug = await response.json()
    assert debug["sender"] == account_address("alice")
    assert debug["deployed"] is False
    assert debug["entryPoint"] == ENTRYPOINT
    assert debug["entrypointHasCode"] is True
    assert debug["entryPointNonce"] == "2"
    assert debug["pricePerTokenWei"] == str(10**15)
    assert debug["minterAllowance"] == "0"
    assert debug["balances"] == {
        "senderWei": "0",
        "paymasterWei": str(5 * 10**17),
    }


@pytest.mark.asyncio
async def test_deploy_then_create(relayer_client, fake_chain):
    response = await relayer_client.post(
        "/api/aa/deploy", json={"user": "alice", "owner": RECEIVER})
    assert response.status == 200
    deployment = await response.json()
    assert deployment["userId"] == "alice"
    assert deployment["factory"] == FACTORY
    assert deployment["predicted"] == account_address("alice")
    assert deployment["owner"] == RECEIVER
    assert deployment["deployed"] is True
    assert deployment["alreadyDeployed"] is False
    assert deployment["txHash"] == fake_chain.transactions[0]["hash"]
    assert deployment["receiptBlock"] == str(fake_chain.block_number)

    response = await relayer_client.get("/api/aa/create?user=alice")
    assert await response.json() == {
        "ok": True,
        "user": "alice",
        "smartAccount": account_address("alice"),
        "alreadyDeployed": True,
    }
    assert len(fake_chain.transactions) == 1


@pytest.mark.asyncio
async def test_create(relayer_client, fake_chain):
    response = await relayer_client.get("/api/aa/create?user=bob")
    created = await response.json()
    assert created["ok"] is True
    assert created["deployed"] is True
    assert created["smartAccount"] == account_address("bob")
    assert created["txHash"] == fake_chain.transactions[0]["hash"]
    assert fake_chain.account_owners[account_address("bob").lower()] == (
        RELAYER_ADDRESS)


@pytest.mark.asyncio
async def test_deploy_rejects_invalid_owner(relayer_client, fake_chain):
    response = await relayer_client.post(
        "/api/aa/deploy?user=alice&owner=nobody")
    assert response.status == 400
    assert fake_chain.transactions == []


@pytest.mark.asyncio
async def test_preflight(relayer_client, fake_bundler):
    response = await relayer_client.get("/api/4337/preflight")
    assert await response.json() == {
        "entrypoint": ENTRYPOINT,
        "entrypointHasCode": True,
        "bundlerUrl": fake_bundler.url,
        "bundlerClientVersion": "fake-bundler/v0.1.0",
    }


@pytest.mark.asyncio
async def test_gasless_mint_draft(relayer_client, fake_bundler):
    response = await relayer_client.get(
        f"/api/aa/gasless-mint/draft?user=alice&to={RECEIVER}")
    assert response.status == 200
    draft = await response.json()
    assert draft["amount"] == "10"
    assert draft["deployed"] is False
    assert draft["userOp"]["sender"] == account_address("alice")
    assert draft["userOp"]["factory"] == FACTORY
    assert draft["userOp"]["paymaster"] == PAYMASTER
    assert fake_bundler.user_operations == []


@pytest.mark.asyncio
async def test_gasless_mint_send(relayer_client, fake_bundler):
    response = await relayer_client.get(
        f"/api/aa/gasless-mint/send?user=alice&to={RECEIVER}&amount=10")
    assert response.status == 200
    sent = await response.json()
    assert sent["ok"] is True
    assert sent["userOpHash"].startswith("0x")
    assert sent["sender"] == account_address("alice")
    assert sent["receiver"] == RECEIVER
    assert sent["amount"] == "10"

    user_operation, entrypoint = fake_bundler.user_operations[0]
    assert entrypoint == ENTRYPOINT
    assert user_operation["sender"] == account_address("alice")


@pytest.mark.asyncio
async def test_gasless_mint_bundler_rejection(relayer_client, fake_bundler):
    fake_bundler.reject_with = {"message": "insufficient paymaster balance"}
    response = await relayer_client.get(
        f"/api/aa/gasless-mint/send?user=alice&to={RECEIVER}")
    assert response.status == 400
    rejection = await response.json()
    assert rejection["error"] == "Bundler rejected"
    assert rejection["details"] == {"message": "insufficient paymaster balance"}
    assert rejection["sentUserOp"]["sender"] == account_address("alice")
    assert rejection["sentUserOp"]["factory"] == FACTORY


@pytest.mark.asyncio
async def test_gasless_mint_validation(relayer_client, relayer_context):
    response = await relayer_client.get(
        "/api/aa/gasless-mint/send?user=alice&to=0x1234")
    assert response.status == 400
    assert await response.json() == {"error": "bad ?to="}

    response = await relayer_client.get(
        f"/api/aa/gasless-mint/send?user=alice&to={RECEIVER}&amount=-1")
    assert response.status == 400

    relayer_context.config.bundler_url = None
    response = await relayer_client.get(
        f"/api/aa/gasless-mint/send?user=alice&to={RECEIVER}")
    assert response.status == 400
    assert await response.json() == {"error": "BUNDLER_URL not set"}


@pytest.mark.asyncio
async def test_token_info(relayer_client):
    response = await relayer_client.get("/api/token/info")
    assert await response.json() == {
        "address": TOKEN,
        "name": "Reward Token",
        "symbol": "RWD",
        "decimals": 18,
        "owner": RELAYER_ADDRESS,
        "totalSupply": "0",
        "totalSupplyFormatted": "0",
        "pricePerTokenWei": str(10**15),
    }


@pytest.mark.asyncio
async def test_token_mint(relayer_client, fake_chain):
    response = await relayer_client.get(
        f"/api/token/mint?wallet={RECEIVER}&amount=2")
    minted = await response.json()
    assert minted["status"] == "minted"
    assert minted["amount"] == "2"
    # allowance raised first, then mintTo
    assert len(fake_chain.transactions) == 2
    assert fake_chain.minter_allowances[RELAYER_ADDRESS.lower()] == 2**256 - 1
    assert fake_chain.token_balances[RECEIVER.lower()] == 2 * 10**18

    await relayer_client.get(f"/api/token/mint?wallet={RECEIVER}")
    assert len(fake_chain.transactions) == 3
    assert fake_chain.token_balances[RECEIVER.lower()] == 12 * 10**18


@pytest.mark.asyncio
async def test_token_buy(relayer_client, fake_chain):
    response = await relayer_client.get(
        f"/api/token/buy?wallet={RECEIVER}&amount=3")
    bought = await response.json()
    assert bought["status"] == "bought"
    assert bought["paidWei"] == str(3 * 10**15)
    assert fake_chain.transactions[0]["value"] == 3 * 10**15


@pytest.mark.asyncio
async def test_token_owner_writes(relayer_client, fake_chain):
    response = await relayer_client.get("/api/token/set-price?wei=5000")
    assert (await response.json())["status"] == "price updated"
    assert fake_chain.token_price == 5000

    response = await relayer_client.get(
        f"/api/token/set-minter?wallet={RECEIVER}&allowance=100")
    assert (await response.json())["status"] == "minter added"
    assert fake_chain.minter_allowances[RECEIVER.lower()] == 100

    response = await relayer_client.get("/api/token/set-price")
    assert response.status == 400
    assert await response.json() == {"error": "missing wei"}


@pytest.mark.asyncio
async def test_token_endpoints_need_relayer_key(
    relayer_client, relayer_context, fake_chain
):
    relayer_context.transaction_sender.relayer_private_key = None
    response = await relayer_client.get(f"/api/token/mint?wallet={RECEIVER}")
    assert response.status == 400
    assert await response.json() == {"error": "RELAYER_PK not set"}
    assert fake_chain.transactions == []


@pytest.mark.asyncio
async def test_paymaster_balance(relayer_client):
    response = await relayer_client.get("/api/paymaster/balance")
    assert await response.json() == {
        "paymaster": PAYMASTER,
        "balanceWei": str(5 * 10**17),
        "balance": "0.5",
    }


@pytest.mark.asyncio
async def test_user_id_is_used_verbatim(relayer_client):
    response = await relayer_client.get("/api/aa/address?user=bob%20")
    assert (await response.json())["smartAccount"] == account_address("bob ")

    response = await relayer_client.get("/api/aa/address?user=bob")
    assert (await response.json())["smartAccount"] == account_address("bob")

    response = await relayer_client.get("/api/aa/address?user=%20%20")
    assert response.status == 400
    assert await response.json() == {"error": "missing ?user=<string>"}


@pytest.mark.asyncio
async def test_amount_above_uint256(relayer_client, fake_bundler):
    response = await relayer_client.get(
        f"/api/aa/gasless-mint/draft?user=alice&to={RECEIVER}&amount=1e60")
    assert response.status == 400
    assert await response.json() == {"error": "amount 1e60 exceeds uint256"}
    assert fake_bundler.user_operations == []


@pytest.mark.asyncio
async def test_gasless_mint_bundler_http_failure(
    relayer_client, relayer_context, faulty_node
):
    relayer_context.config.bundler_url = faulty_node.url
    response = await relayer_client.get(
        f"/api/aa/gasless-mint/send?user=alice&to={RECEIVER}")
    assert response.status == 500
    assert await response.json() == {"error": "rpc error 502"}
    assert faulty_node.hits == 1


@pytest.mark.asyncio
async def test_aa_debug_with_malformed_nonce(relayer_client, fake_chain):
    fake_chain.raw_nonce_result = "0x1234"
    response = await relayer_client.get("/api/aa/debug?user=%20alice%20")
    assert response.status == 200
    debug = await response.json()
    assert debug["userId"] == "alice"
    assert debug["sender"] == account_address("alice")
    assert debug["entryPointNonce"] is None
    assert debug["entrypointHasCode"] is True
