"""ABI of the EthJobEscrow contract (functions, events and custom errors the gateway uses)."""


def _fn(name, inputs, outputs=(), mutability='nonpayable'):
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in outputs],
        "stateMutability": mutability,
    }


def _event(name, inputs):
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [{"name": n, "type": t, "indexed": idx} for n, t, idx in inputs],
    }


_JOB_FIELDS = (
    ("client", "address"),
    ("freelancer", "address"),
    ("usdAmount", "uint256"),
    ("ethAmount", "uint256"),
    ("isCompleted", "bool"),
    ("isPaid", "bool"),
)

CUSTOM_ERRORS = (
    "InsufficientEthSent",
    "JobAlreadyCompleted",
    "JobNotCancelable",
    "JobNotCompleted",
    "NotJobClient",
    "OnlyClientCanMarkCompleted",
    "PaymentAlreadyReleased",
)

ESCROW_ABI = [
    _fn("postJob",
        [("jobId", "uint256"), ("freelancer", "address"), ("usdAmount", "uint256"), ("client", "address")],
        mutability="payable"),
    _fn("markJobCompleted", [("jobId", "uint256")]),
    _fn("cancelJob", [("jobId", "uint256")]),
    _fn("getJobDetails", [("jobId", "uint256")], _JOB_FIELDS, mutability="view"),
    _fn("jobs", [("", "uint256")], _JOB_FIELDS, mutability="view"),
    _fn("convertUsdToEth", [("usdAmount", "uint256")], [("", "uint256")], mutability="view"),
    _fn("getLatestEthUsd", [], [("", "uint256")], mutability="view"),
    _fn("FEE_PERCENT", [], [("", "uint256")], mutability="view"),
    _event("JobPosted", [
        ("jobId", "uint256", False),
        ("client", "address", True),
        ("freelancer", "address", True),
        ("usdAmount", "uint256", False),
        ("ethAmount", "uint256", False),
    ]),
    _event("JobCompleted", [("jobId", "uint256", False)]),
    _event("PaymentReleased", [
        ("jobId", "uint256", False),
        ("freelancer", "address", True),
        ("ethAmount", "uint256", False),
    ]),
    _event("JobCancelled", [
        ("jobId", "uint256", False),
        ("client", "address", True),
        ("ethAmount", "uint256", False),
    ]),
] + [{"type": "error", "name": name, "inputs": []} for name in CUSTOM_ERRORS]

# Event name -> names of its indexed inputs
EVENT_NAMES = {
    entry["name"]: {i["name"] for i in entry["inputs"] if i["indexed"]}
    for entry in ESCROW_ABI if entry["type"] == "event"
}
