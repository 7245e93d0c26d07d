"""
Label and annotation keys shared by every object s2k manages.

Other tooling discovers which objects belong to which stack through the
ownership, identity and deployed-by labels only.
"""

# Ownership
STACK_NAME_LABEL = "stack.s2k.dev/name"

# Identity
STACK_SERVICE_NAME_LABEL = "stack.s2k.dev/service"
STACK_VOLUME_NAME_LABEL = "stack.s2k.dev/volume"

DEPLOYED_BY_LABEL = "s2k.dev/deployed-by"

# Marks the persisted stack record
STACK_LABEL = "s2k.dev/stack"

UPDATE_STRATEGY_ANNOTATION = "s2k.dev/update-strategy"
REVISION_ANNOTATION = "s2k.dev/revision"


def volume_marker_label(local_path: str) -> str:
    """
    Co-location marker carried by pods that mount the named volume ``local_path``.
    """
    return f"{STACK_VOLUME_NAME_LABEL}-{local_path}"
