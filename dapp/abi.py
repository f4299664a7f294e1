"""ABI fragments of the raffle contract used by the client."""

from __future__ import annotations

import json
import pathlib
from typing import Any, Sequence


def _view(name: str, inputs: Sequence[dict[str, str]] = ()) -> dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "inputs": list(inputs),
        "outputs": [{"name": "", "type": "uint256", "internalType": "uint256"}],
        "stateMutability": "view",
    }


_ADDRESS_INPUT = {"name": "player", "type": "address", "internalType": "address"}

RAFFLE_ABI: list[dict[str, Any]] = [
    _view("getEntranceFee"),
    _view("getEntryDeadline"),
    _view("getPrizePool"),
    _view("getPlayersCount"),
    _view("getEntriesCount"),
    _view("getRoundNumber"),
    _view("getPlayerEntryCount", [_ADDRESS_INPUT]),
    _view("getUnclaimedPrize", [_ADDRESS_INPUT]),
    {
        "type": "function",
        "name": "enterRaffle",
        "inputs": [],
        "outputs": [],
        "stateMutability": "payable",
    },
    {
        "type": "function",
        "name": "claimPrize",
        "inputs": [],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
    {
        "type": "event",
        "name": "EntryRecorded",
        "anonymous": False,
        "inputs": [
            {"name": "roundNumber", "type": "uint256", "indexed": True, "internalType": "uint256"},
            {"name": "player", "type": "address", "indexed": True, "internalType": "address"},
        ],
    },
    {
        "type": "event",
        "name": "DrawCompleted",
        "anonymous": False,
        "inputs": [
            {"name": "roundNumber", "type": "uint256", "indexed": True, "internalType": "uint256"},
            {"name": "winner", "type": "address", "indexed": True, "internalType": "address"},
            {"name": "prize", "type": "uint256", "indexed": False, "internalType": "uint256"},
        ],
    },
    {
        "type": "event",
        "name": "PrizeClaimed",
        "anonymous": False,
        "inputs": [
            {"name": "winner", "type": "address", "indexed": True, "internalType": "address"},
            {"name": "amount", "type": "uint256", "indexed": False, "internalType": "uint256"},
        ],
    },
]

EVENT_SIGNATURES = {
    "EntryRecorded": "EntryRecorded(uint256,address)",
    "DrawCompleted": "DrawCompleted(uint256,address,uint256)",
}


def load_abi(path: str) -> Sequence[dict[str, Any]]:
    """Load the ABI from a Hardhat/Foundry artifact instead of the bundled one."""

    artifact_path = pathlib.Path(path)
    if not artifact_path.exists():
        raise FileNotFoundError(f"Contract artifact not found: {artifact_path}")
    with artifact_path.open("r", encoding="utf-8") as fh:
        artifact = json.load(fh)
    abi = artifact.get("abi") if isinstance(artifact, dict) else artifact
    if not isinstance(abi, list):
        raise ValueError("Invalid artifact file: missing ABI")
    return abi
