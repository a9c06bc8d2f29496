import asyncio
import logging
import weakref
from dataclasses import dataclass
from typing import Any

from aa_relayer.account.account_resolver import AccountInfo, AccountResolver
from aa_relayer.relayer.transaction_sender import RelayerTransactionSender
from aa_relayer.typing import Address, TransactionHash


@dataclass
class DeploymentResult:
    account: AccountInfo
    deployed: bool
    owner: Address | None
    already_deployed: bool
    transaction_hash: TransactionHash | None = None
    block_number: int | None = None
    warning: str | None = None

    @property
    def sender(self) -> Address:
        return self.account.sender

    def get_deployment_json(self) -> dict[str, Any]:
        result = {
            "userId": self.account.user_id,
            "factory": self.account.factory,
            "predicted": self.sender,
            "owner": self.owner,
            "txHash": self.transaction_hash,
            "deployed": self.deployed,
            "alreadyDeployed": self.already_deployed,
            "receiptBlock":
            None if self.block_number is None else str(self.block_number),
        }
        if self.warning is not None:
            result["warning"] = self.warning
        return result


class AccountDeployer:
    """
    Deploys smart accounts through the factory, paying gas from the
    relayer key. Deployments of the same (factory, user id) pair are
    serialized in process and are a no-op once the code exists.
    """
    account_resolver: AccountResolver
    transaction_sender: RelayerTransactionSender
    _deployment_locks: weakref.WeakValueDictionary

    def __init__(
        self,
        account_resolver: AccountResolver,
        transaction_sender: RelayerTransactionSender,
    ):
        self.account_resolver = account_resolver
        self.transaction_sender = transaction_sender
        self._deployment_locks = weakref.WeakValueDictionary()

    def _get_lock(self, factory: Address, user_id: str) -> asyncio.Lock:
        key = (factory.lower(), user_id)
        lock = self._deployment_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._deployment_locks[key] = lock
        return lock

    async def deploy_account(
        self, factory: Address, user_id: str, owner: Address | None = None
    ) -> DeploymentResult:
        lock = self._get_lock(factory, user_id)
        async with lock:
            return await self._deploy_account(factory, user_id, owner)

    async def _deploy_account(
        self, factory: Address, user_id: str, owner: Address | None
    ) -> DeploymentResult:
        account = await self.account_resolver.resolve_account(factory, user_id)
        if account.deployed:
            logging.debug(
                f"Account {account.sender} for user {user_id} already deployed")
            return DeploymentResult(
                account=account,
                deployed=True,
                owner=owner,
                already_deployed=True,
            )

        relayer_address = self.transaction_sender.require_relayer_address()
        if owner is None:
            owner = relayer_address

        factory_data = account.factory_data(owner)
        transaction_hash, receipt = await self.transaction_sender.send_and_wait(
            factory, factory_data
        )
        block_number = receipt.get("blockNumber")
        if isinstance(block_number, str):
            block_number = int(block_number, 16)

        deployed = await self.account_resolver.is_deployed(account.sender)
        warning = None
        if deployed:
            account.deployed = True
            logging.info(
                f"Account {account.sender} deployed for user {user_id} "
                f"with {account.variant.create_account.signature}"
            )
        else:
            warning = (
                f"createAccount mined in {transaction_hash} but no code "
                f"found at {account.sender}"
            )
            logging.warning(warning)

        return DeploymentResult(
            account=account,
            deployed=deployed,
            owner=owner,
            already_deployed=False,
            transaction_hash=transaction_hash,
            block_number=block_number,
            warning=warning,
        )
