"""
Minimal contract interface helpers: function signatures, selectors,
call data encoding and return data decoding on top of eth_abi.
"""
import glob
import json
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, localcontext
from functools import cached_property
from typing import Any, Sequence

from eth_abi import decode, encode
from eth_abi import exceptions as abi_exceptions
from eth_utils import keccak, to_checksum_address

from aa_relayer.exceptions import DecodingError, EncodingError

PACKAGE_CONTRACTS_DIRECTORY = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "contracts"
)

_ENCODING_FAILURES = (
    abi_exceptions.EncodingError,
    abi_exceptions.ParseError,
    abi_exceptions.ABITypeError,
    abi_exceptions.PredicateMappingError,
    ValueError,
    TypeError,
    OverflowError,
)

_DECODING_FAILURES = (
    abi_exceptions.DecodingError,
    abi_exceptions.ParseError,
    abi_exceptions.ABITypeError,
    abi_exceptions.PredicateMappingError,
    ValueError,
    TypeError,
)


def _split_types(types_str: str) -> tuple[str, ...]:
    types: list[str] = []
    depth = 0
    current = ""
    for char in types_str:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        if char == "," and depth == 0:
            types.append(current.strip())
            current = ""
        else:
            current += char
    if current.strip():
        types.append(current.strip())
    return tuple(types)


def _abi_param_type(param: dict[str, Any]) -> str:
    param_type = param["type"]
    if param_type.startswith("tuple"):
        components = ",".join(
            _abi_param_type(component) for component in param["components"]
        )
        return f"({components}){param_type[len('tuple'):]}"
    return param_type


def _checksum_addresses(types: Sequence[str], values: Sequence[Any]) -> tuple:
    # eth_abi decodes addresses lowercase
    return tuple(
        to_checksum_address(value) if abi_type == "address" else value
        for abi_type, value in zip(types, values)
    )


def _to_bytes(function: str, raw: str | bytes) -> bytes:
    if isinstance(raw, bytes):
        return raw
    if not isinstance(raw, str) or raw[:2] != "0x":
        raise DecodingError(function, f"invalid hex data: {raw!r}")
    try:
        return bytes.fromhex(raw[2:])
    except ValueError:
        raise DecodingError(function, f"invalid hex data: {raw!r}")


@dataclass(frozen=True)
class FunctionSignature:
    name: str
    input_types: tuple[str, ...]
    output_types: tuple[str, ...] = ()

    @classmethod
    def from_text(cls, text: str) -> "FunctionSignature":
        """
        Parse "name(type,...)" or "name(type,...)(type,...)".
        """
        name, _, rest = text.strip().partition("(")
        depth = 1
        for index, char in enumerate(rest):
            if char == "(":
                depth += 1
            elif char == ")":
                depth -= 1
                if depth == 0:
                    break
        else:
            raise ValueError(f"unbalanced function signature: {text}")
        inputs = _split_types(rest[:index])
        outputs_str = rest[index + 1:].strip()
        outputs: tuple[str, ...] = ()
        if outputs_str:
            if outputs_str[0] != "(" or outputs_str[-1] != ")":
                raise ValueError(f"invalid return types in: {text}")
            outputs = _split_types(outputs_str[1:-1])
        return cls(name.strip(), inputs, outputs)

    @classmethod
    def from_abi(cls, entry: dict[str, Any]) -> "FunctionSignature":
        return cls(
            entry["name"],
            tuple(_abi_param_type(param) for param in entry.get("inputs", [])),
            tuple(_abi_param_type(param) for param in entry.get("outputs", [])),
        )

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.input_types)})"

    @cached_property
    def selector(self) -> str:
        return "0x" + keccak(text=self.signature)[:4].hex()

    def encode(self, args: Sequence[Any]) -> str:
        if len(args) != len(self.input_types):
            raise EncodingError(
                self.signature,
                f"expected {len(self.input_types)} arguments, got {len(args)}",
            )
        try:
            params = encode(list(self.input_types), list(args))
        except _ENCODING_FAILURES as excp:
            raise EncodingError(self.signature, str(excp))
        return self.selector + params.hex()

    def decode_result(self, raw: str | bytes) -> tuple:
        data = _to_bytes(self.signature, raw)
        try:
            values = decode(list(self.output_types), data)
        except _DECODING_FAILURES as excp:
            raise DecodingError(self.signature, str(excp))
        return _checksum_addresses(self.output_types, values)

    def decode_arguments(self, call_data: str | bytes) -> tuple:
        data = _to_bytes(self.signature, call_data)
        if "0x" + data[:4].hex() != self.selector:
            raise DecodingError(
                self.signature,
                f"selector 0x{data[:4].hex()} does not match {self.selector}",
            )
        try:
            values = decode(list(self.input_types), data[4:])
        except _DECODING_FAILURES as excp:
            raise DecodingError(self.signature, str(excp))
        return _checksum_addresses(self.input_types, values)


class ContractInterface:
    name: str
    functions: list[FunctionSignature]

    def __init__(self, name: str, abi: list[dict[str, Any]]):
        self.name = name
        self.functions = [
            FunctionSignature.from_abi(entry)
            for entry in abi
            if entry.get("type", "function") == "function"
        ]

    def get_function(
        self,
        name: str,
        input_types: Sequence[str] | None = None,
        default: str | None = None,
    ) -> FunctionSignature:
        for function in self.functions:
            if function.name != name:
                continue
            if input_types is None or function.input_types == tuple(input_types):
                return function
        # overloads missing from the compiled artifact
        if default is not None:
            return FunctionSignature.from_text(default)
        wanted = name if input_types is None else f"{name}({','.join(input_types)})"
        raise EncodingError(wanted, f"function not found in {self.name} ABI")


def load_artifact(contract_name: str, artifacts_dir: str | None = None) -> dict:
    if artifacts_dir is not None:
        matches = glob.glob(
            os.path.join(artifacts_dir, "**", f"{contract_name}.json"),
            recursive=True,
        )
        if len(matches) > 0:
            artifact_file = sorted(matches, key=len)[0]
        else:
            artifact_file = os.path.join(
                PACKAGE_CONTRACTS_DIRECTORY, f"{contract_name}.json")
    else:
        artifact_file = os.path.join(
            PACKAGE_CONTRACTS_DIRECTORY, f"{contract_name}.json")

    with open(artifact_file) as artifact:
        return json.load(artifact)


def load_contract_interface(
    contract_name: str, artifacts_dir: str | None = None
) -> ContractInterface:
    artifact = load_artifact(contract_name, artifacts_dir)
    return ContractInterface(contract_name, artifact["abi"])


def parse_units(amount: str, decimals: int = 18) -> int:
    try:
        value = Decimal(amount)
    except InvalidOperation:
        raise ValueError(f"invalid amount: {amount}")
    if not value.is_finite() or value < 0:
        raise ValueError(f"invalid amount: {amount}")
    with localcontext() as ctx:
        ctx.prec = 100
        scaled = value.scaleb(decimals)
        if scaled != scaled.to_integral_value():
            raise ValueError(
                f"amount {amount} has more than {decimals} decimals")
        return int(scaled)
