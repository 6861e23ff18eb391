"""
TradeDocuments Contract Interface
Expected call signatures and startup validation of the configured ABI
"""

import json
import pathlib
from typing import Any, Dict, List, Optional, Tuple

from tradechain.services.errors import ContractConfigError

# function name -> (input types, output types, stateMutability class)
EXPECTED_FUNCTIONS: Dict[str, Tuple[Tuple[str, ...], Tuple[str, ...], str]] = {
    "storeDocument": (("uint256", "uint8", "string"), (), "write"),
    "setCarbonEmission": (("uint256", "uint256", "string"), (), "write"),
    "getDocument": (("uint256", "uint8"), ("string", "address", "uint256"), "read"),
    "getCarbonEmission": (("uint256",), ("uint256", "string", "address", "uint256"), "read"),
    "isProductComplete": (("uint256",), ("bool",), "read"),
}

READ_MUTABILITY = {"view", "pure"}
WRITE_MUTABILITY = {"nonpayable", "payable"}


def _io(names_types: List[Tuple[str, str]]) -> List[Dict[str, str]]:
    return [{"name": name, "type": type_} for name, type_ in names_types]


CANONICAL_ABI: List[Dict[str, Any]] = [
    {
        "inputs": _io([("productId", "uint256"), ("docType", "uint8"), ("cid", "string")]),
        "name": "storeDocument",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": _io([("productId", "uint256"), ("totalEmissions", "uint256"), ("unit", "string")]),
        "name": "setCarbonEmission",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": _io([("productId", "uint256"), ("docType", "uint8")]),
        "name": "getDocument",
        "outputs": _io([("cid", "string"), ("uploadedBy", "address"), ("timestamp", "uint256")]),
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": _io([("productId", "uint256")]),
        "name": "getCarbonEmission",
        "outputs": _io([
            ("totalEmissions", "uint256"),
            ("unit", "string"),
            ("reportedBy", "address"),
            ("timestamp", "uint256"),
        ]),
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": _io([("productId", "uint256")]),
        "name": "isProductComplete",
        "outputs": _io([("", "bool")]),
        "stateMutability": "view",
        "type": "function",
    },
]


def load_abi(abi_path: Optional[str]) -> List[Dict[str, Any]]:
    """
    Load the contract ABI.

    Accepts a Hardhat artifact ({"abi": [...]}) or a bare ABI list. With no
    path configured the canonical ABI is used; a configured path that does not
    exist is an error.

    Raises:
        ContractConfigError: missing file, unreadable JSON, or no ABI inside
    """
    if not abi_path:
        return CANONICAL_ABI

    path = pathlib.Path(abi_path)
    if not path.exists():
        raise ContractConfigError(
            f"ABI not found at {path}. Did you run `npx hardhat compile`?"
        )

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ContractConfigError(f"ABI file {path} is not valid JSON: {e}")

    abi = data.get("abi") if isinstance(data, dict) else data
    if not isinstance(abi, list) or not abi:
        raise ContractConfigError(f"ABI missing in {path}")
    return abi


def validate_abi(abi: List[Dict[str, Any]]) -> None:
    """
    Check that every expected function exists with the expected signature.

    Raises:
        ContractConfigError: listing every missing or mismatched function
    """
    functions: Dict[str, List[Dict[str, Any]]] = {}
    for entry in abi:
        if entry.get("type") == "function" and entry.get("name"):
            functions.setdefault(entry["name"], []).append(entry)

    problems = []
    for name, (inputs, outputs, kind) in EXPECTED_FUNCTIONS.items():
        candidates = functions.get(name)
        if not candidates:
            problems.append(f"{name}: missing")
            continue

        matched = False
        for entry in candidates:
            entry_inputs = tuple(i.get("type") for i in entry.get("inputs", []))
            entry_outputs = tuple(o.get("type") for o in entry.get("outputs", []))
            mutability = entry.get("stateMutability", "nonpayable")
            allowed = READ_MUTABILITY if kind == "read" else WRITE_MUTABILITY
            if entry_inputs == inputs and entry_outputs == outputs and mutability in allowed:
                matched = True
                break

        if not matched:
            found = [
                f"({','.join(i.get('type', '?') for i in e.get('inputs', []))})"
                f"->({','.join(o.get('type', '?') for o in e.get('outputs', []))})"
                for e in candidates
            ]
            problems.append(
                f"{name}: expected ({','.join(inputs)})->({','.join(outputs)}) {kind}, found {', '.join(found)}"
            )

    if problems:
        raise ContractConfigError("Contract interface mismatch: " + "; ".join(problems))
