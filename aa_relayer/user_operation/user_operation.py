from dataclasses import dataclass

from aa_relayer.typing import Address


def _bytes_to_hex(value: bytes) -> str:
    return "0x" + value.hex()


def _hex_to_bytes(field_name: str, value: str | bytes) -> bytes:
    if isinstance(value, bytes):
        return value
    if not isinstance(value, str) or value[:2] != "0x":
        raise ValueError(f"Invalid bytes value : {value} in field {field_name}")
    try:
        return bytes.fromhex(value[2:])
    except ValueError:
        raise ValueError(f"Invalid bytes value : {value} in field {field_name}")


@dataclass()
class UserOperation:
    """
    EntryPoint v0.7 UserOperation in its unpacked form.
    """
    sender_address: Address
    nonce: int
    call_data: bytes
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    factory: Address | None = None
    factory_data: bytes | None = None
    paymaster: Address | None = None
    paymaster_verification_gas_limit: int | None = None
    paymaster_post_op_gas_limit: int | None = None
    paymaster_data: bytes = b""
    signature: bytes = b""

    def __post_init__(self) -> None:
        self.call_data = _hex_to_bytes("callData", self.call_data)
        self.paymaster_data = _hex_to_bytes("paymasterData", self.paymaster_data)
        self.signature = _hex_to_bytes("signature", self.signature)
        if self.factory_data is not None:
            self.factory_data = _hex_to_bytes("factoryData", self.factory_data)

        has_factory = self.factory is not None and self.factory != ""
        has_factory_data = (
            self.factory_data is not None and len(self.factory_data) > 0)
        if has_factory != has_factory_data:
            raise ValueError(
                'Invalid UserOperation, "factory" and "factoryData" '
                "have to be both set or both null"
            )

    def get_user_operation_json(self) -> dict[str, str]:
        user_operation_json = {
            "sender": self.sender_address,
            "nonce": hex(self.nonce),
            "callData": _bytes_to_hex(self.call_data),
            "callGasLimit": hex(self.call_gas_limit),
            "verificationGasLimit": hex(self.verification_gas_limit),
            "preVerificationGas": hex(self.pre_verification_gas),
            "maxFeePerGas": hex(self.max_fee_per_gas),
            "maxPriorityFeePerGas": hex(self.max_priority_fee_per_gas),
        }
        if self.factory is not None and self.factory_data is not None:
            user_operation_json["factory"] = self.factory
            user_operation_json["factoryData"] = _bytes_to_hex(self.factory_data)
        if self.paymaster is not None:
            user_operation_json["paymaster"] = self.paymaster
            if self.paymaster_verification_gas_limit is not None:
                user_operation_json["paymasterVerificationGasLimit"] = hex(
                    self.paymaster_verification_gas_limit)
            if self.paymaster_post_op_gas_limit is not None:
                user_operation_json["paymasterPostOpGasLimit"] = hex(
                    self.paymaster_post_op_gas_limit)
            user_operation_json["paymasterData"] = _bytes_to_hex(
                self.paymaster_data)
        user_operation_json["signature"] = _bytes_to_hex(self.signature)
        return user_operation_json
