"""Persistence gateway over SQLite.

Storage for documents, chunks and their embeddings behind a stored-procedure
style contract:

- ``begin_transaction()`` hands the caller a TransactionContext that owns one
  pooled connection until it is committed or rolled back
- ``execute(tx, name, params)`` runs a registered procedure with its typed
  parameter model
- ``commit(tx)`` / ``rollback(tx)`` resolve the context exactly once and return
  the connection to the pool

The gateway never retries inside a transaction. Blocking SQLite calls run on
the default executor and are bounded by timeouts; a procedure that overruns
is interrupted on its connection.
"""
import asyncio
import sqlite3
import uuid
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Optional

import structlog

from docrag import config
from docrag.errors import ProcedureError, ProtocolViolation, StoreConnectionError
from docrag.procedures import PROCEDURES, SCHEMA, ProcedureParams, ProcedureResult

logger = structlog.get_logger()


class TxState(str, Enum):
    OPEN = "open"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class TransactionContext:
    """One unit of work. Owned by whoever opened it; never shared."""

    def __init__(self, connection: sqlite3.Connection, readonly: bool):
        self.tx_id = str(uuid.uuid4())
        self.readonly = readonly
        self.state = TxState.OPEN
        self._connection = connection
        self._busy = False

    @property
    def is_open(self) -> bool:
        return self.state is TxState.OPEN

    def __repr__(self) -> str:
        mode = "ro" if self.readonly else "rw"
        return f"<TransactionContext {self.tx_id[:8]} {mode} {self.state.value}>"


class ConnectionPool:
    """Fixed-size pool of SQLite connections, created lazily.

    Capacity is counted in slots, so a discarded connection frees its slot
    for the next waiter immediately.
    """

    def __init__(self, db_path: Path, size: int, acquire_timeout: float, busy_timeout: float):
        self.db_path = db_path
        self.size = size
        self.acquire_timeout = acquire_timeout
        self.busy_timeout = busy_timeout
        self._slots = asyncio.Semaphore(size)
        self._idle: list = []
        self._in_use = 0
        self._closed = False

    @property
    def available(self) -> int:
        return self.size - self._in_use

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    async def acquire(self) -> sqlite3.Connection:
        if self._closed:
            raise StoreConnectionError("connection pool is closed")

        try:
            async with asyncio.timeout(self.acquire_timeout):
                await self._slots.acquire()
        except TimeoutError as e:
            logger.warning(
                "connection_acquire_timeout",
                timeout=self.acquire_timeout,
                pool_size=self.size,
            )
            raise StoreConnectionError(
                f"no connection available within {self.acquire_timeout}s"
            ) from e

        self._in_use += 1
        if self._idle:
            return self._idle.pop()
        try:
            return await asyncio.to_thread(self._connect)
        except BaseException as e:
            self._in_use -= 1
            self._slots.release()
            if isinstance(e, sqlite3.Error):
                raise StoreConnectionError(f"cannot open database: {e}") from e
            raise

    def release(self, conn: sqlite3.Connection, discard: bool = False) -> None:
        if discard or self._closed:
            try:
                conn.close()
            except sqlite3.Error:
                logger.warning("connection_close_failed")
        else:
            self._idle.append(conn)
        self._in_use -= 1
        self._slots.release()

    def close(self) -> None:
        self._closed = True
        while self._idle:
            self._idle.pop().close()


def _translate(procedure: str, error: sqlite3.Error) -> Exception:
    """Map a SQLite error onto the gateway's error taxonomy."""
    if isinstance(error, sqlite3.IntegrityError):
        return ProcedureError("constraint_violation", str(error), procedure)
    if isinstance(error, sqlite3.OperationalError) and "interrupted" in str(error):
        return StoreConnectionError(f"{procedure}: interrupted after timeout")
    if isinstance(error, (sqlite3.OperationalError, sqlite3.InterfaceError, sqlite3.ProgrammingError)):
        return StoreConnectionError(f"{procedure}: {error}")
    return ProcedureError("database_error", str(error), procedure)


class PersistenceGateway:
    """Transaction-scoped access to the document store."""

    def __init__(
        self,
        db_path: Optional[Path] = None,
        pool_size: Optional[int] = None,
        acquire_timeout: Optional[float] = None,
        procedure_timeout: Optional[float] = None,
        strict: Optional[bool] = None,
    ):
        """Initialize the gateway.

        Args:
            db_path: SQLite database file (default from config)
            pool_size: Maximum live connections (default from config)
            acquire_timeout: Seconds to wait for a pooled connection
            procedure_timeout: Seconds a single procedure, commit or rollback may run
            strict: Raise ProtocolViolation for contexts left open at close
        """
        self.db_path = Path(db_path or config.DB_PATH)
        self.procedure_timeout = procedure_timeout or config.DB_PROCEDURE_TIMEOUT
        self.strict = config.STRICT_TRANSACTIONS if strict is None else strict
        self._pool_size = pool_size or config.DB_POOL_SIZE
        self._acquire_timeout = acquire_timeout or config.DB_ACQUIRE_TIMEOUT
        self.pool: Optional[ConnectionPool] = None
        self._active: Dict[str, TransactionContext] = {}

    @property
    def is_open(self) -> bool:
        return self.pool is not None

    @property
    def open_transactions(self) -> int:
        return len(self._active)

    async def open(self) -> None:
        """Create the schema and the connection pool. Safe to call twice."""
        if self.pool is not None:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        def init_schema() -> None:
            conn = sqlite3.connect(self.db_path)
            try:
                conn.execute("PRAGMA journal_mode = WAL")
                conn.executescript(SCHEMA)
                conn.commit()
            finally:
                conn.close()

        try:
            await asyncio.to_thread(init_schema)
        except sqlite3.Error as e:
            logger.error("database_init_failed", db_path=str(self.db_path), error=str(e))
            raise StoreConnectionError(f"cannot initialize database: {e}") from e

        self.pool = ConnectionPool(
            self.db_path,
            size=self._pool_size,
            acquire_timeout=self._acquire_timeout,
            busy_timeout=self.procedure_timeout,
        )
        logger.info("database_initialized", db_path=str(self.db_path), pool_size=self._pool_size)

    async def close(self) -> None:
        """Close the pool. Contexts still open are rolled back and reported."""
        if self.pool is None:
            return

        leaked = list(self._active.values())
        for tx in leaked:
            logger.error("transaction_context_leaked", tx_id=tx.tx_id, readonly=tx.readonly)
            await self._finish(tx, "rollback")

        self.pool.close()
        self.pool = None
        logger.info("database_closed", db_path=str(self.db_path))

        if leaked and self.strict:
            raise ProtocolViolation(
                f"{len(leaked)} transaction context(s) were never committed or rolled back"
            )

    async def begin_transaction(self, readonly: bool = False) -> TransactionContext:
        """Open a unit of work on a pooled connection.

        Raises:
            StoreConnectionError: If no connection is available within the
                acquire timeout, or the write lock cannot be taken
        """
        if self.pool is None:
            raise StoreConnectionError("gateway is not open")

        conn = await self.pool.acquire()
        statement = "BEGIN" if readonly else "BEGIN IMMEDIATE"
        try:
            await self._run(conn, lambda: conn.execute(statement), "begin")
        except BaseException:
            self.pool.release(conn, discard=True)
            raise

        tx = TransactionContext(conn, readonly=readonly)
        self._active[tx.tx_id] = tx
        logger.debug("transaction_begun", tx_id=tx.tx_id, readonly=readonly)
        return tx

    async def execute(
        self, tx: TransactionContext, procedure_name: str, params: ProcedureParams
    ) -> ProcedureResult:
        """Run a registered procedure inside ``tx``.

        Raises:
            ProtocolViolation: Unknown procedure, wrong parameter type, write in a
                read-only context, resolved context or concurrent use
            ProcedureError: The procedure rejected the call
            StoreConnectionError: Transport lost or the procedure timed out
        """
        self._check_open(tx)

        procedure = PROCEDURES.get(procedure_name)
        if procedure is None:
            raise ProtocolViolation(f"unknown procedure {procedure_name!r}")
        if type(params) is not procedure.params:
            raise ProtocolViolation(
                f"{procedure_name} expects {procedure.params.__name__}, "
                f"got {type(params).__name__}"
            )
        if procedure.writes and tx.readonly:
            raise ProtocolViolation(f"{procedure_name} writes but {tx!r} is read-only")

        conn = tx._connection
        tx._busy = True
        try:
            return await self._run(conn, lambda: procedure.body(conn, params), procedure_name)
        finally:
            tx._busy = False

    async def commit(self, tx: TransactionContext) -> None:
        self._check_open(tx)
        await self._finish(tx, "commit")

    async def rollback(self, tx: TransactionContext) -> None:
        self._check_open(tx)
        await self._finish(tx, "rollback")

    @asynccontextmanager
    async def transaction(self, readonly: bool = False) -> AsyncIterator[TransactionContext]:
        """Open a context, commit on normal exit and roll back on any exception.

        Cancellation of the surrounding task still resolves the context.
        """
        tx = await self.begin_transaction(readonly=readonly)
        try:
            yield tx
        except BaseException:
            if tx.is_open:
                try:
                    await asyncio.shield(self._finish(tx, "rollback"))
                except Exception as e:
                    logger.error("rollback_failed", tx_id=tx.tx_id, error=str(e))
            raise
        if tx.is_open:
            await self._finish(tx, "commit")

    def _check_open(self, tx: TransactionContext) -> None:
        if self._active.get(tx.tx_id) is not tx:
            raise ProtocolViolation(f"{tx!r} is not open on this gateway")
        if tx._busy:
            raise ProtocolViolation(f"{tx!r} is already executing a procedure")

    async def _finish(self, tx: TransactionContext, action: str) -> None:
        """Commit or roll back ``tx`` and return its connection to the pool.

        A commit is never interrupted: if the caller is cancelled meanwhile,
        the commit runs to completion and the context records what actually
        happened before the cancellation propagates.
        """
        conn = tx._connection
        committed = False
        failed = False

        def statement() -> None:
            nonlocal committed
            conn.execute(action.upper())
            committed = action == "commit"

        try:
            await self._run(conn, statement, action, interruptible=action != "commit")
        except Exception:
            failed = True
            raise
        finally:
            if _in_transaction(conn):
                failed = True
                try:
                    await asyncio.shield(
                        self._run(conn, lambda: conn.execute("ROLLBACK"), "rollback")
                    )
                except Exception as e:
                    logger.warning("rollback_after_failure_failed", tx_id=tx.tx_id, error=str(e))
            tx.state = TxState.COMMITTED if committed else TxState.ROLLED_BACK
            self._active.pop(tx.tx_id, None)
            if self.pool is not None:
                self.pool.release(conn, discard=failed)
            else:
                conn.close()
            logger.debug("transaction_finished", tx_id=tx.tx_id, state=tx.state.value)

    async def _run(
        self,
        conn: sqlite3.Connection,
        fn: Callable[[], Any],
        name: str,
        interruptible: bool = True,
    ) -> Any:
        """Run ``fn`` on a worker thread, bounded by the procedure timeout.

        The thread is always allowed to finish before this returns, so the
        connection is never used by two threads at once.
        """
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, fn)
        try:
            done, _ = await asyncio.wait({future}, timeout=self.procedure_timeout)
        except asyncio.CancelledError:
            if interruptible:
                conn.interrupt()
            await asyncio.wait({future})
            if not future.cancelled():
                future.exception()
            raise

        if not done:
            logger.warning("procedure_timeout", procedure=name, timeout=self.procedure_timeout)
            if interruptible:
                conn.interrupt()
            await asyncio.wait({future})

        try:
            return future.result()
        except sqlite3.Error as e:
            error = _translate(name, e)
            logger.warning(
                "procedure_failed",
                procedure=name,
                error=str(e),
                error_type=type(error).__name__,
            )
            raise error from e


def _in_transaction(conn: sqlite3.Connection) -> bool:
    try:
        return conn.in_transaction
    except sqlite3.Error:
        return False
