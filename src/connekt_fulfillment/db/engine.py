"""SQLite database connection management, schema initialization and transactions."""

import itertools
import sqlite3
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL DEFAULT 'default',
    owner_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    budget INTEGER NOT NULL DEFAULT 0 CHECK (budget >= 0),
    currency TEXT NOT NULL,
    deadline TEXT,
    status TEXT DEFAULT 'planning' CHECK (status IN ('planning', 'active', 'on-hold', 'completed')),
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS project_members (
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    role TEXT NOT NULL CHECK (role IN ('owner', 'supervisor', 'member')),
    assigned_at TEXT DEFAULT (datetime('now')),
    PRIMARY KEY (project_id, user_id)
);

CREATE TABLE IF NOT EXISTS wallets (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    owner_type TEXT DEFAULT 'user' CHECK (owner_type IN ('user', 'agency')),
    balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
    currency TEXT NOT NULL,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    UNIQUE(owner_id, owner_type)
);

CREATE TABLE IF NOT EXISTS wallet_transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    wallet_id TEXT NOT NULL REFERENCES wallets(id),
    type TEXT NOT NULL CHECK (type IN ('deposit', 'withdrawal', 'escrow_hold', 'escrow_release', 'refund')),
    amount INTEGER NOT NULL,
    currency TEXT NOT NULL,
    description TEXT DEFAULT '',
    counterparty_id TEXT,
    hold_id TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS escrow_holds (
    id TEXT PRIMARY KEY,
    amount INTEGER NOT NULL CHECK (amount > 0),
    currency TEXT NOT NULL,
    source_wallet_id TEXT NOT NULL REFERENCES wallets(id),
    destination_party_id TEXT,
    destination_wallet_id TEXT REFERENCES wallets(id),
    task_id TEXT REFERENCES tasks(id),
    project_id TEXT REFERENCES projects(id),
    contract_id TEXT REFERENCES contracts(id),
    kind TEXT DEFAULT 'assignee' CHECK (kind IN ('assignee', 'task_admin', 'project')),
    status TEXT DEFAULT 'held' CHECK (status IN ('held', 'released', 'refunded')),
    reason TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    resolved_at TEXT,
    CHECK ((task_id IS NULL) != (project_id IS NULL))
);

CREATE TABLE IF NOT EXISTS contracts (
    id TEXT PRIMARY KEY,
    sender_id TEXT NOT NULL,
    recipient_id TEXT NOT NULL,
    type TEXT NOT NULL,
    terms TEXT NOT NULL,
    task_id TEXT REFERENCES tasks(id),
    project_id TEXT REFERENCES projects(id),
    status TEXT DEFAULT 'pending' CHECK (status IN ('pending', 'accepted', 'rejected', 'expired', 'cancelled')),
    expires_at TEXT NOT NULL,
    resolved_at TEXT,
    resolved_by TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS contract_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    contract_id TEXT NOT NULL REFERENCES contracts(id) ON DELETE CASCADE,
    event_type TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    actor_id TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS fulfillments (
    contract_id TEXT PRIMARY KEY REFERENCES contracts(id),
    hold_id TEXT REFERENCES escrow_holds(id),
    fulfilled_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id),
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    status TEXT DEFAULT 'todo' CHECK (status IN ('todo', 'in-progress', 'pending-validation', 'done', 'paid')),
    priority TEXT DEFAULT 'medium' CHECK (priority IN ('low', 'medium', 'high', 'urgent')),
    assignee_id TEXT,
    task_admin_id TEXT,
    price_amount INTEGER NOT NULL DEFAULT 0 CHECK (price_amount >= 0),
    currency TEXT NOT NULL,
    payment_status TEXT DEFAULT 'unpaid' CHECK (payment_status IN ('unpaid', 'pending', 'paid')),
    due_date TEXT,
    estimated_hours REAL,
    visibility TEXT DEFAULT 'private' CHECK (visibility IN ('private', 'public')),
    is_reassignable INTEGER DEFAULT 1,
    archived INTEGER DEFAULT 0,
    version INTEGER NOT NULL DEFAULT 1,
    created_by TEXT NOT NULL,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS task_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    event_type TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    actor_id TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS proofs (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(id),
    submitter_id TEXT NOT NULL,
    evidence TEXT NOT NULL,
    notes TEXT DEFAULT '',
    submitted_at TEXT NOT NULL,
    decision TEXT CHECK (decision IS NULL OR decision IN ('approved', 'rejected')),
    reviewer_id TEXT,
    reviewed_at TEXT,
    review_notes TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS proofs_one_active
    ON proofs(task_id) WHERE decision IS NULL;

CREATE TABLE IF NOT EXISTS settlements (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id),
    status TEXT DEFAULT 'started' CHECK (status IN ('started', 'released', 'completed', 'failed')),
    hold_ids TEXT DEFAULT '[]',
    error TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    recipient_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    payload TEXT DEFAULT '{}',
    push_status TEXT DEFAULT 'stored' CHECK (push_status IN ('stored', 'sent', 'retry', 'failed')),
    attempts INTEGER DEFAULT 0,
    last_error TEXT,
    read INTEGER DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS holds_by_task ON escrow_holds(task_id, status);
CREATE INDEX IF NOT EXISTS holds_by_wallet ON escrow_holds(source_wallet_id, status);
CREATE INDEX IF NOT EXISTS txns_by_wallet ON wallet_transactions(wallet_id);
CREATE INDEX IF NOT EXISTS tasks_by_project ON tasks(project_id, status);
"""

_savepoints = itertools.count(1)


def init_db(db_path: Path, timeout: float = 5.0) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed.

    ``timeout`` bounds how long a writer waits for the database lock.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=timeout, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path, timeout: float = 5.0):
    """Context manager for database connections."""
    conn = init_db(db_path, timeout=timeout)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(db: sqlite3.Connection):
    """Run a block as one single-writer transaction.

    The outermost call takes the write lock up front (``BEGIN IMMEDIATE``),
    so every read inside it observes the state left by the previous writer.
    Nested calls become savepoints and roll back on their own.
    """
    if db.in_transaction:
        name = f"sp_{next(_savepoints)}"
        db.execute(f"SAVEPOINT {name}")
        try:
            yield db
        except BaseException:
            db.execute(f"ROLLBACK TO {name}")
            db.execute(f"RELEASE {name}")
            raise
        else:
            db.execute(f"RELEASE {name}")
        return

    db.execute("BEGIN IMMEDIATE")
    try:
        yield db
    except BaseException:
        db.rollback()
        raise
    else:
        db.commit()
