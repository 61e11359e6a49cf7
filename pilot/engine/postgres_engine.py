import logging
from dataclasses import dataclass, field
from typing import Any

import pglast  # type: ignore
import psycopg
from pglast.parser import ParseError  # type: ignore
from psycopg import sql
from psycopg.errors import QueryCanceled

from pilot.engine.plan_pipelines import extract_relations, plan_to_pipelines
from pilot.engine.query_engine import (
    BindError,
    BoundStatement,
    ExecutionError,
    OptimizeTimeout,
    PhysicalPlan,
    QueryEngine,
)
from pilot.metrics import PipelineMetricsContext
from pilot.settings import KnobSettings
from util.log import PILOT_LOGGER_NAME
from util.pg import create_psycopg_conn


@dataclass
class PostgresTransaction:
    db_oid: int
    conn: psycopg.Connection[Any]
    statement_names: list[str] = field(default_factory=list)


class PostgresQueryEngine(QueryEngine):
    """
    Replays traced queries against a live Postgres instance. Hypothetical settings are applied with
    SET LOCAL so they die with the transaction, and every transaction is rolled back.

    Postgres can't execute a plan handed to it from the outside, so compile_and_run plans the
    statement again under EXPLAIN ANALYZE. The settings are the same, so the plan is too.
    """

    def __init__(self, connstrs: dict[int, str]) -> None:
        # {db_oid: connection string}
        self.connstrs = connstrs
        self._conns: dict[int, psycopg.Connection[Any]] = {}
        self._next_statement_num = 0

    def _get_conn(self, db_oid: int) -> psycopg.Connection[Any]:
        if db_oid not in self.connstrs:
            raise BindError(f"database {db_oid} is not configured")
        if db_oid not in self._conns or self._conns[db_oid].closed:
            try:
                self._conns[db_oid] = create_psycopg_conn(
                    self.connstrs[db_oid], autocommit=False
                )
            except psycopg.Error as e:
                raise ExecutionError(f"could not connect to database {db_oid}: {e}") from e
        return self._conns[db_oid]

    def _drop_conn(self, db_oid: int) -> None:
        # The next replay on this database reconnects.
        conn = self._conns.pop(db_oid, None)
        if conn is not None:
            conn.close()

    def close(self) -> None:
        for conn in self._conns.values():
            conn.close()
        self._conns = {}

    def begin_transaction(
        self, db_oid: int, exec_settings: KnobSettings
    ) -> PostgresTransaction:
        conn = self._get_conn(db_oid)
        try:
            # With autocommit off, the first statement opens the transaction.
            for name, value in exec_settings.items():
                conn.execute(
                    sql.SQL("SET LOCAL {} = {}").format(
                        sql.Identifier(name),
                        sql.SQL(exec_settings.get_spec(name).format_value(value)),
                    )
                )
        except psycopg.Error as e:
            self._drop_conn(db_oid)
            raise ExecutionError(f"could not apply settings: {e}") from e
        return PostgresTransaction(db_oid, conn)

    def bind(
        self,
        txn: PostgresTransaction,
        query_id: int,
        query_text: str,
        params: tuple[Any, ...],
        param_types: tuple[str, ...],
    ) -> BoundStatement:
        try:
            stmts = pglast.parse_sql(query_text)
        except ParseError as e:
            raise BindError(f"could not parse: {e}") from e
        if len(stmts) != 1:
            raise BindError(f"expected one statement, got {len(stmts)}")
        if len(params) != len(param_types):
            raise BindError(
                f"{len(params)} parameters for {len(param_types)} parameter types"
            )

        try:
            for relname in extract_relations(stmts):
                row = txn.conn.execute("SELECT to_regclass(%s)", (relname,)).fetchone()
                if row is None or row[0] is None:
                    raise BindError(f"relation {relname} does not exist")

            statement_name = f"pilot_q{query_id}_{self._next_statement_num}"
            self._next_statement_num += 1
            if len(param_types) > 0:
                prepare = sql.SQL("PREPARE {} ({}) AS {}").format(
                    sql.Identifier(statement_name),
                    sql.SQL(", ").join(sql.SQL(t) for t in param_types),
                    sql.SQL(query_text),
                )
            else:
                prepare = sql.SQL("PREPARE {} AS {}").format(
                    sql.Identifier(statement_name), sql.SQL(query_text)
                )
            txn.conn.execute(prepare)
        except psycopg.Error as e:
            raise BindError(str(e)) from e

        txn.statement_names.append(statement_name)
        return BoundStatement(query_id, query_text, params, param_types, statement_name)

    def _execute_sql(self, bound: BoundStatement) -> sql.Composable:
        if len(bound.params) == 0:
            return sql.SQL("EXECUTE {}").format(sql.Identifier(bound.handle))
        return sql.SQL("EXECUTE {}({})").format(
            sql.Identifier(bound.handle),
            sql.SQL(", ").join(sql.Literal(p) for p in bound.params),
        )

    def optimize(
        self, txn: PostgresTransaction, bound: BoundStatement, timeout_us: int
    ) -> PhysicalPlan:
        timeout_ms = max(1, timeout_us // 1000)
        try:
            txn.conn.execute(
                sql.SQL("SET LOCAL statement_timeout = {}").format(sql.Literal(timeout_ms))
            )
            row = txn.conn.execute(
                sql.SQL("EXPLAIN (FORMAT JSON) {}").format(self._execute_sql(bound))
            ).fetchone()
            txn.conn.execute("SET LOCAL statement_timeout = 0")
        except QueryCanceled as e:
            raise OptimizeTimeout(f"planning took over {timeout_ms}ms") from e
        except psycopg.Error as e:
            raise BindError(str(e)) from e
        assert row is not None
        return PhysicalPlan(bound, row[0][0]["Plan"])

    def compile_and_run(
        self,
        txn: PostgresTransaction,
        plan: PhysicalPlan,
        metrics_context: PipelineMetricsContext,
    ) -> None:
        try:
            row = txn.conn.execute(
                sql.SQL("EXPLAIN (ANALYZE, BUFFERS, FORMAT JSON) {}").format(
                    self._execute_sql(plan.bound)
                )
            ).fetchone()
        except psycopg.Error as e:
            raise ExecutionError(str(e)) from e
        assert row is not None

        pipelines = plan_to_pipelines(row[0][0]["Plan"])
        for pipeline_id, features in enumerate(pipelines):
            metrics_context.record_pipeline(pipeline_id, features)
        logging.getLogger(PILOT_LOGGER_NAME).debug(
            f"Ran query {plan.bound.query_id} with {len(pipelines)} pipelines"
        )

    def abort(self, txn: PostgresTransaction) -> None:
        try:
            txn.conn.rollback()
            if len(txn.statement_names) > 0:
                # Prepared statements outlive the transaction that created them.
                txn.conn.execute("DEALLOCATE ALL")
                txn.conn.rollback()
                txn.statement_names = []
        except psycopg.Error as e:
            # Closing the connection discards the transaction and its prepared statements.
            self._drop_conn(txn.db_oid)
            raise ExecutionError(f"could not roll back: {e}") from e
