"""Status constants and the batch aggregation rule.

Jobs move queued -> processing -> {completed | failed}. Batches move
pending -> processing and settle in completed, failed or partial once every
child job has reached a terminal state.
"""

# Job states
JOB_QUEUED = "queued"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

JOB_STATES = {
    JOB_QUEUED: "Created, waiting for a runner",
    JOB_PROCESSING: "Runner is executing pipeline steps",
    JOB_COMPLETED: "All enabled steps finished, output published",
    JOB_FAILED: "A step or source resolution failed",
}

TERMINAL_JOB_STATES = frozenset({JOB_COMPLETED, JOB_FAILED})

# Batch states
BATCH_PENDING = "pending"
BATCH_PROCESSING = "processing"
BATCH_COMPLETED = "completed"
BATCH_FAILED = "failed"
BATCH_PARTIAL = "partial"

TERMINAL_BATCH_STATES = frozenset({BATCH_COMPLETED, BATCH_FAILED, BATCH_PARTIAL})


def is_terminal_job(status: str) -> bool:
    return status in TERMINAL_JOB_STATES


def aggregate_batch_status(completed: int, failed: int, total: int) -> str:
    """Derive batch status from child outcome counts.

    The batch is terminal only once every child has finished. It is
    ``completed`` when nothing failed, ``failed`` when nothing completed,
    and ``partial`` otherwise.

    Examples:
        >>> aggregate_batch_status(2, 1, 3)
        'partial'
        >>> aggregate_batch_status(1, 0, 3)
        'processing'
    """
    if total <= 0:
        return BATCH_PENDING
    if completed + failed >= total:
        if failed == 0:
            return BATCH_COMPLETED
        if completed == 0:
            return BATCH_FAILED
        return BATCH_PARTIAL
    return BATCH_PROCESSING
