import glob
from eth_account import Account
from eth_utils import to_hex


def import_relayer_account(
    keystore_file_password, keystore_file_path="keystore/*"
):
    if keystore_file_path != "keystore/*":
        keystore = keystore_file_path
    else:
        keystore = glob.glob(keystore_file_path)[0]

    with open(keystore) as keyfile:
        encrypted_key = keyfile.read()
        private_key = Account.decrypt(encrypted_key, keystore_file_password)
        acct = Account.from_key(private_key)
        return acct.address, to_hex(private_key)


def public_address_from_private_key(private_key: str) -> str:
    if private_key[:2] == "0x":
        private_key = private_key[2:]
    public_address = Account.from_key(bytes.fromhex(private_key))
    return public_address.address
