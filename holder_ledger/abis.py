"""Minimal ABIs for the indexed collections (view functions only)."""


def _view(name, inputs, outputs):
    return {
        "type": "function",
        "name": name,
        "stateMutability": "view",
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": outputs,
    }


def _out(*types):
    return [{"name": "", "type": t} for t in types]


TRANSFER_EVENT = "Transfer(address,address,uint256)"

ERC721_ABI = [
    _view("totalSupply", [], _out("uint256")),
    _view("ownerOf", [("tokenId", "uint256")], _out("address")),
    _view("balanceOf", [("owner", "address")], _out("uint256")),
    {
        "type": "event",
        "name": "Transfer",
        "anonymous": False,
        "inputs": [
            {"name": "from", "type": "address", "indexed": True},
            {"name": "to", "type": "address", "indexed": True},
            {"name": "tokenId", "type": "uint256", "indexed": True},
        ],
    },
]

# Element 280 / Element 369 / Stax share one tier interface.
ELEMENT_ABI = ERC721_ABI + [
    _view("totalBurned", [], _out("uint256")),
    _view("getNftTier", [("tokenId", "uint256")], [{"name": "tier", "type": "uint8"}]),
]

ASCENDANT_ABI = ERC721_ABI + [
    _view("tokenId", [], _out("uint256")),
    _view(
        "getNFTAttribute",
        [("tokenId", "uint256")],
        [{
            "name": "",
            "type": "tuple",
            "components": [
                {"name": "rarityNumber", "type": "uint256"},
                {"name": "tier", "type": "uint8"},
                {"name": "rarity", "type": "uint8"},
            ],
        }],
    ),
    _view(
        "userRecords",
        [("tokenId", "uint256")],
        [{"name": "shares", "type": "uint256"}, {"name": "lockedAscendant", "type": "uint256"}],
    ),
    _view("totalShares", [], _out("uint256")),
    _view("toDistribute", [("index", "uint256")], _out("uint256")),
    _view("batchClaimableAmount", [("tokenIds", "uint256[]")], [{"name": "toClaim", "type": "uint256"}]),
]

MULTICALL3_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"
MULTICALL3_ABI = [
    {
        "type": "function",
        "name": "aggregate3",
        "stateMutability": "payable",
        "inputs": [{
            "name": "calls",
            "type": "tuple[]",
            "components": [
                {"name": "target", "type": "address"},
                {"name": "allowFailure", "type": "bool"},
                {"name": "callData", "type": "bytes"},
            ],
        }],
        "outputs": [{
            "name": "returnData",
            "type": "tuple[]",
            "components": [
                {"name": "success", "type": "bool"},
                {"name": "returnData", "type": "bytes"},
            ],
        }],
    },
]


def function_names(abi):
    return {item["name"] for item in abi if item.get("type") == "function"}


def find_function(abi, name):
    for item in abi:
        if item.get("type") == "function" and item.get("name") == name:
            return item
    return None
