"""Contract ABIs for the private escrow and its dispute resolver.

Only the surface the client touches is declared. Encrypted amounts travel as
InEuint tuples (ctHash, securityZone, utype, signature).
"""

from web3 import Web3


def _param(type_: str, name: str = "", components: list | None = None) -> dict:
    p = {"type": type_, "name": name, "internalType": type_}
    if components is not None:
        p["components"] = components
    return p


def _in_euint(name: str, bits: int) -> dict:
    p = _param("tuple", name, [
        _param("uint256", "ctHash"),
        _param("uint8", "securityZone"),
        _param("uint8", "utype"),
        _param("bytes", "signature"),
    ])
    p["internalType"] = f"struct InEuint{bits}"
    return p


def _fn(name: str, inputs=(), outputs=(), mutability: str = "nonpayable") -> dict:
    return {
        "type": "function",
        "name": name,
        "inputs": list(inputs),
        "outputs": list(outputs),
        "stateMutability": mutability,
    }


def _view(name: str, inputs=(), outputs=()) -> dict:
    return _fn(name, inputs, outputs, "view")


def _event(name: str, inputs: list[tuple[str, str, bool]]) -> dict:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [
            {"type": t, "name": n, "indexed": indexed, "internalType": t}
            for t, n, indexed in inputs
        ],
    }


_ID = _param("bytes32", "contractId")
_INDEX = _param("uint256", "milestoneIndex")

ESCROW_ABI = [
    # --- writes ---
    _fn("createContract", [
        _param("address", "client"), _param("address", "developer"),
        _in_euint("encryptedTotal", 128), _param("uint256", "totalAmount"),
    ], [_param("bytes32", "")]),
    _fn("createInvite", [
        _param("bool", "isClientSide"), _in_euint("encryptedTotal", 128),
        _param("uint256", "totalAmount"),
    ], [_param("bytes32", "")]),
    _fn("acceptInvite", [_param("bytes32", "inviteId")], [_param("bytes32", "")]),
    _fn("bailOutInvite", [_param("bytes32", "inviteId")]),
    _fn("setTerms", [_ID, _param("uint256", "deadline")]),
    _fn("addMilestone", [_ID, _in_euint("amountPortion", 32), _param("string", "description")]),
    _fn("updateMilestone", [
        _ID, _INDEX, _in_euint("amountPortion", 32), _param("string", "description"),
    ]),
    _fn("removeLastMilestone", [_ID]),
    _fn("signContract", [_ID]),
    _fn("fundEscrow", [_ID], mutability="payable"),
    _fn("submitMilestone", [_ID, _INDEX, _param("string", "comment")]),
    _fn("approveMilestone", [_ID, _INDEX]),
    _fn("rejectMilestone", [_ID, _INDEX]),
    _fn("claimPayout", [_ID]),
    _fn("raiseDispute", [_ID]),
    _fn("resolveDispute", [_ID, _param("bool", "clientWins")]),
    _fn("requestCancel", [_ID]),
    _fn("cancelContract", [_ID]),
    _fn("claimRefund", [_ID]),
    _fn("addDiscussionMessage", [_ID, _param("string", "message")]),
    _fn("setUsername", [_param("string", "username")]),
    # --- reads ---
    _view("getContract", [_ID], [
        _param("address", "client"), _param("address", "developer"),
        _param("uint8", "state"), _param("uint256", "deadline"),
        _param("uint256", "balance"), _param("uint256", "createdAt"),
        _param("bool", "clientSigned"), _param("bool", "developerSigned"),
        _param("uint256", "milestoneCount"), _param("uint256", "approvedCount"),
    ]),
    _view("contracts", [_ID], [
        _param("address", "client"), _param("address", "developer"),
        _param("uint8", "state"), _param("uint256", "deadline"),
        _param("uint256", "balance"), _param("uint256", "createdAt"),
        _param("bool", "clientSigned"), _param("bool", "developerSigned"),
        _param("uint256", "milestoneCount"), _param("uint256", "approvedCount"),
        _param("address", "judge"), _param("bool", "disputeResolved"),
        _param("bool", "clientWinsDispute"),
    ]),
    _view("milestones", [_ID, _INDEX], [
        _param("bool", "submitted"), _param("bool", "approved"), _param("uint256", "submittedAt"),
    ]),
    _view("milestoneDescriptions", [_ID, _INDEX], [_param("string", "")]),
    _view("milestoneCompletionComments", [_ID, _INDEX], [_param("string", "")]),
    _view("discussionMessageCount", [_ID], [_param("uint256", "")]),
    _view("discussionSenders", [_ID, _param("uint256", "index")], [_param("address", "")]),
    _view("discussionMessages", [_ID, _param("uint256", "index")], [_param("string", "")]),
    _view("usernames", [_param("address", "user")], [_param("string", "")]),
    _view("getAddressByUsername", [_param("string", "username")], [_param("address", "")]),
    _view("requiredFundAmount", [_ID], [_param("uint256", "")]),
    _view("userContractCount", [_param("address", "user")], [_param("uint256", "")]),
    _view("userContractIds", [_param("address", "user"), _param("uint256", "index")],
          [_param("bytes32", "")]),
    _view("contractCreator", [_ID], [_param("address", "")]),
    _view("clientCancelRequested", [_ID], [_param("bool", "")]),
    _view("developerCancelRequested", [_ID], [_param("bool", "")]),
    _view("inviteCreator", [_param("bytes32", "inviteId")], [_param("address", "")]),
    _view("inviteIsClientSide", [_param("bytes32", "inviteId")], [_param("bool", "")]),
    _view("inviteAcceptedBy", [_param("bytes32", "inviteId")], [_param("address", "")]),
    _view("inviteContractId", [_param("bytes32", "inviteId")], [_param("bytes32", "")]),
    # --- events ---
    _event("ContractCreated", [
        ("bytes32", "contractId", True), ("address", "client", True),
        ("address", "developer", True),
    ]),
    _event("InviteCreated", [
        ("bytes32", "inviteId", True), ("address", "creator", True),
        ("bool", "isClientSide", False),
    ]),
    _event("InviteAccepted", [
        ("bytes32", "inviteId", True), ("address", "acceptor", True),
        ("bytes32", "contractId", False),
    ]),
    _event("DiscussionMessage", [
        ("bytes32", "contractId", True), ("address", "sender", True),
        ("uint256", "index", False),
    ]),
]

RESOLVER_ABI = [
    _fn("resolveDispute", [_ID, _param("bool", "clientWins")]),
    _view("arbitrators", [_param("address", "account")], [_param("bool", "")]),
]


def event_signature(name: str, abi: list = ESCROW_ABI) -> str:
    for item in abi:
        if item["type"] == "event" and item["name"] == name:
            types = ",".join(i["type"] for i in item["inputs"])
            return f"{name}({types})"
    raise KeyError(f"No event {name!r} in ABI")


def event_topic(name: str, abi: list = ESCROW_ABI) -> str:
    """topics[0] of an event: keccak256 of its canonical signature."""
    return Web3.to_hex(Web3.keccak(text=event_signature(name, abi)))


def event_names_by_topic(abi: list = ESCROW_ABI) -> dict[str, str]:
    return {
        event_topic(item["name"], abi): item["name"]
        for item in abi if item["type"] == "event"
    }
