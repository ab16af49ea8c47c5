"""Stable skip reasons recorded in the ledger.

These strings are matched by operators and retry tooling; do not reword them.
"""

BELONGS_TO_SKIPPED_TASK = "Belongs to a skipped task"
MISSING_DECISION_DEFINITION = "Missing decision definition"
MISSING_DECISION_REQUIREMENTS = "Missing decision requirements definition"
MISSING_FLOW_NODE = "Missing flow node"
MISSING_FORM = "Missing form"
MISSING_JOB_REFERENCE = "Missing job reference"
MISSING_PARENT_DECISION_INSTANCE = "Missing parent decision instance"
MISSING_PARENT_FLOW_NODE = "Missing parent flow node"
MISSING_PARENT_PROCESS_INSTANCE = "Missing parent process instance"
MISSING_PROCESS_DEFINITION = "Missing process definition"
MISSING_PROCESS_INSTANCE = "Missing process instance"
MISSING_PROCESS_INSTANCE_KEY = "Missing process instance key"
MISSING_ROOT_DECISION_INSTANCE = "Missing root decision instance"
MISSING_ROOT_PROCESS_INSTANCE = "Missing root process instance"
MISSING_SCOPE_KEY = "Missing scope key"
MISSING_USER_TASK = "Missing user task"

UNSUPPORTED_CMMN_TASK = "C7 CMMN user tasks not supported in C8."
UNSUPPORTED_CMMN_VARIABLE = "C7 CMMN variables not supported in C8."
UNSUPPORTED_STANDALONE_TASK = "C7 standalone user tasks not supported in C8."

CONVERSION_ERROR_PREFIX = "Conversion error: "


def conversion_error(message: str) -> str:
    """Skip reason for an entity rejected by a conversion step."""
    return f"{CONVERSION_ERROR_PREFIX}{message}"
