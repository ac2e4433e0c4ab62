JOBS_TABLE_SCHEMA = """
create table if not exists jobs (
    job_id                    text primary key,
    job_type                  text not null,
    payload                   text not null,
    priority                  integer not null default 0,
    status                    text not null default 'pending',
    attempts                  integer not null default 0,
    max_attempts              integer not null default 5,
    last_error                text,
    next_run_at               text not null,
    created_at                text not null,
    started_at                text,
    completed_at              text,
    correlation_id            text,
    parent_job_id             text,
    claimed_by                text,
    result                    text,
    foreign key (parent_job_id) references jobs(job_id),
    check (status in ('pending', 'processing', 'completed', 'failed', 'cancelled')),
    check (attempts >= 0)
);
"""

JOB_ERRORS_TABLE_SCHEMA = """
create table if not exists job_errors (
    error_id                  integer primary key autoincrement,
    job_id                    text not null,
    attempt                   integer not null,
    error_text                text not null,
    error_blob                text not null,
    created_at                text not null,
    foreign key (job_id)      references jobs(job_id)
);
"""

# Claim order: highest priority, then earliest next_run_at
JOBS_CLAIM_INDEX = """
CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(status, priority DESC, next_run_at ASC);
"""

# Reaper sweeps
JOBS_PROCESSING_INDEX = """
CREATE INDEX IF NOT EXISTS idx_jobs_processing ON jobs(status, started_at);
"""

JOBS_TYPE_STATUS_INDEX = """
CREATE INDEX IF NOT EXISTS idx_jobs_type_status ON jobs(job_type, status);
"""

JOBS_CORRELATION_INDEX = """
CREATE INDEX IF NOT EXISTS idx_jobs_correlation ON jobs(correlation_id) WHERE correlation_id IS NOT NULL;
"""

JOB_ERRORS_INDEX = """
CREATE INDEX IF NOT EXISTS idx_job_errors_job ON job_errors(job_id, error_id);
"""

JOB_STORE_SCHEMA = [
    JOBS_TABLE_SCHEMA,
    JOB_ERRORS_TABLE_SCHEMA,
    JOBS_CLAIM_INDEX,
    JOBS_PROCESSING_INDEX,
    JOBS_TYPE_STATUS_INDEX,
    JOBS_CORRELATION_INDEX,
    JOB_ERRORS_INDEX,
]

JOB_COLUMNS = """
    job_id,
    job_type,
    payload,
    priority,
    status,
    attempts,
    max_attempts,
    last_error,
    next_run_at,
    created_at,
    started_at,
    completed_at,
    correlation_id,
    parent_job_id,
    claimed_by,
    result
"""
