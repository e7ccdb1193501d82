# D:\cda_rewards\cda_rewards\ledger\abi.py
"""最小 ABI (このサービスが呼ぶ関数 / 購読するイベントだけ)"""


def _fn(name, inputs, outputs=(), mutability="view"):
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"internalType": t, "name": n, "type": t} for n, t in inputs],
        "outputs": [{"internalType": t, "name": n, "type": t} for n, t in outputs],
    }


def _event(name, inputs):
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [{"indexed": idx, "internalType": t, "name": n, "type": t} for n, t, idx in inputs],
    }


CDA_TOKEN_ABI = [
    _fn("balanceOf", [("account", "address")], [("", "uint256")]),
    _fn(
        "getCycleInfo",
        [],
        [
            ("cycle", "uint256"),
            ("resetTimestamp", "uint256"),
            ("totalSupply", "uint256"),
            ("daysUntilReset", "uint256"),
        ],
    ),
    _fn("getRemainingAllocation", [("category", "string")], [("", "uint256")]),
    _fn(
        "distributeReward",
        [("recipient", "address"), ("amount", "uint256"), ("reason", "string"), ("category", "string")],
        mutability="nonpayable",
    ),
    _fn(
        "batchDistributeRewards",
        [("recipients", "address[]"), ("amounts", "uint256[]"), ("reason", "string"), ("category", "string")],
        mutability="nonpayable",
    ),
]

RESET_MANAGER_ABI = [
    _fn(
        "getResetStatus",
        [],
        [("canResetNow", "bool"), ("resetReason", "string"), ("daysUntilEligible", "uint256")],
    ),
    _fn("initiateReset", [], mutability="nonpayable"),
]

BADGE_NFT_ABI = [
    _fn(
        "getUserBadgeInfo",
        [("user", "address")],
        [
            ("currentLevel", "uint256"),
            ("badgeTokenIds", "uint256[]"),
            ("eventsAttended", "uint256"),
            ("volunteeredTimes", "uint256"),
            ("presentationsMade", "uint256"),
            ("projectsCompleted", "uint256"),
        ],
    ),
    _fn(
        "recordActivity",
        [("user", "address"), ("activityType", "string"), ("count", "uint256")],
        mutability="nonpayable",
    ),
    _fn(
        "batchRecordActivity",
        [("users", "address[]"), ("activityType", "string"), ("counts", "uint256[]")],
        mutability="nonpayable",
    ),
]

SWAG_REDEMPTION_ABI = [
    _fn(
        "redemptions",
        [("redemptionId", "uint256")],
        [
            ("user", "address"),
            ("itemId", "uint256"),
            ("cdaCost", "uint256"),
            ("timestamp", "uint256"),
            ("fulfilled", "bool"),
            ("shippingInfo", "string"),
        ],
    ),
    _fn(
        "swagItems",
        [("itemId", "uint256")],
        [("name", "string"), ("cdaCost", "uint256"), ("stock", "uint256"), ("active", "bool")],
    ),
    _event(
        "SwagRedeemed",
        [
            ("redemptionId", "uint256", True),
            ("user", "address", True),
            ("itemId", "uint256", True),
            ("cdaCost", "uint256", False),
        ],
    ),
    _event(
        "RedemptionFulfilled",
        [("redemptionId", "uint256", True), ("user", "address", True)],
    ),
]
