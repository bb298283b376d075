# vibe_crm/provisioning/provisioner.py
"""
Provisioner: applies a validated CRM schema to the tenant database.

Every call runs as a single transaction on one tenant connection, so a
failure part-way through leaves the namespace as it was. Failures are
raised as ProvisioningFailure naming the table being processed.

- plan(project_id, schema)       -> ProvisioningPlan for a fresh namespace (dry run)
- provision(project_id, schema)  -> create every table, policy, index and trigger
- diff(project_id, schema)       -> SchemaDiff between live namespace and schema
- sync(project_id, schema, allow_destructive=False) -> apply only the difference
- deprovision(project_id, tables=None) -> drop tables, or the whole namespace
"""
import logging
from typing import Any, Callable, Iterable, List, Optional

from vibe_crm.config import TENANT_COLUMN, TENANT_ID_EXPR, TENANT_ROLE
from vibe_crm.errors import ProvisioningFailure, ValidationFailure
from vibe_crm.models import ProvisionResult
from vibe_crm.provisioning.ddl import DDLBuilder, ProvisioningPlan, Statement, namespace_for, topological_order
from vibe_crm.provisioning.schema_diff import SchemaDiff, desired_columns, diff_schemas, get_live_schema
from vibe_crm.provisioning.tenant_db import tenant_connection
from vibe_crm.structured_schemas import CRMSchema
from vibe_crm.validator import validate_or_raise

logger = logging.getLogger(__name__)


class Provisioner:
    def __init__(
        self,
        connection_factory: Callable[[], Any] = tenant_connection,
        *,
        tenant_column: str = TENANT_COLUMN,
        tenant_id_expr: str = TENANT_ID_EXPR,
        tenant_role: str = TENANT_ROLE,
    ):
        self._connection_factory = connection_factory
        self._tenant_column = tenant_column
        self._tenant_id_expr = tenant_id_expr
        self._tenant_role = tenant_role

    # -----------------------
    # internal helpers
    # -----------------------

    def _builder(self, project_id: str) -> DDLBuilder:
        try:
            return DDLBuilder(
                namespace_for(project_id),
                tenant_column=self._tenant_column,
                tenant_id_expr=self._tenant_id_expr,
                tenant_role=self._tenant_role,
            )
        except ValueError as e:
            raise ProvisioningFailure(f"Cannot derive a safe namespace: {e}") from e

    @staticmethod
    def _checked(schema: Any) -> CRMSchema:
        # Re-validated on every call; plan() and deprovision callers skip the pipeline
        return validate_or_raise(schema)

    @staticmethod
    def _table_step(table: Optional[str], build: Callable[[], List[Statement]]) -> List[Statement]:
        try:
            return build()
        except ValueError as e:
            raise ProvisioningFailure(
                f"Cannot build DDL for table '{table}': {e}", table=table
            ) from e

    def _execute(self, cursor, statements: Iterable[Statement]) -> int:
        count = 0
        for stmt in statements:
            try:
                cursor.execute(stmt.sql)
            except Exception as e:
                where = f"table '{stmt.table}'" if stmt.table else "namespace setup"
                logger.exception("Provisioning statement failed on %s", where)
                raise ProvisioningFailure(
                    f"Provisioning failed on {where}: {e}", table=stmt.table
                ) from e
            count += 1
        return count

    # -----------------------
    # Plans
    # -----------------------

    def plan(self, project_id: str, schema: Any) -> ProvisioningPlan:
        parsed = self._checked(schema)
        builder = self._builder(project_id)
        plan = ProvisioningPlan(namespace=builder.namespace)
        plan.extend(builder.setup_statements())
        for table in topological_order(parsed):
            plan.extend(self._table_step(
                table.name,
                lambda t=table: [Statement(builder.create_table(t), t.name, "table")] + builder.table_extras(t),
            ))
            plan.tables.append(table.name)
        return plan

    def sync_plan(self, builder: DDLBuilder, parsed: CRMSchema, diff: SchemaDiff, allow_destructive: bool) -> ProvisioningPlan:
        plan = ProvisioningPlan(namespace=builder.namespace)
        plan.extend(builder.setup_statements())

        if allow_destructive:
            for table in diff.drop_tables:
                plan.add(builder.drop_table(table), table, "drop")
            for table, cols in diff.drop_columns.items():
                for col in cols:
                    plan.add(builder.drop_column(table, col), table, "drop")

        new_tables = set(diff.create_tables)
        for table in topological_order(parsed):
            if table.name in new_tables:
                plan.extend(self._table_step(
                    table.name,
                    lambda t=table: [Statement(builder.create_table(t), t.name, "table")],
                ))
                plan.tables.append(table.name)

        for table in parsed.tables:
            if table.name in new_tables:
                continue
            if allow_destructive:
                for col_name, _old, _new in diff.type_changes.get(table.name, []):
                    plan.extend(self._table_step(
                        table.name,
                        lambda t=table, c=col_name: [Statement(builder.alter_column_type(t.name, t.column(c)), t.name, "alter")],
                    ))
            for col_name in diff.add_columns.get(table.name, []):
                plan.extend(self._table_step(
                    table.name,
                    lambda t=table, c=col_name: [Statement(builder.add_column(t.name, t.column(c)), t.name, "alter")],
                ))

        for table in topological_order(parsed):
            plan.extend(self._table_step(table.name, lambda t=table: builder.table_extras(t)))
        return plan

    # -----------------------
    # Operations
    # -----------------------

    def provision(self, project_id: str, schema: Any) -> ProvisionResult:
        plan = self.plan(project_id, schema)
        logger.info("Provisioning %d table(s) into %s", len(plan.tables), plan.namespace)
        with self._connection_factory() as conn:
            with conn.cursor() as cur:
                executed = self._execute(cur, plan.statements)
        return ProvisionResult(
            namespace=plan.namespace,
            tables_created=list(plan.tables),
            statements=executed,
        )

    def diff(self, project_id: str, schema: Any) -> SchemaDiff:
        parsed = self._checked(schema)
        builder = self._builder(project_id)
        with self._connection_factory() as conn:
            with conn.cursor() as cur:
                live = get_live_schema(cur, builder.namespace)
        return diff_schemas(live, desired_columns(parsed))

    def sync(self, project_id: str, schema: Any, *, allow_destructive: bool = False) -> ProvisionResult:
        """
        Bring the live namespace in line with ``schema``. Destructive
        differences (dropped tables/columns, type changes) are refused with
        a ValidationFailure listing each one unless ``allow_destructive``.
        """
        parsed = self._checked(schema)
        builder = self._builder(project_id)

        with self._connection_factory() as conn:
            with conn.cursor() as cur:
                live = get_live_schema(cur, builder.namespace)
                diff = diff_schemas(live, desired_columns(parsed))

                if diff.is_destructive and not allow_destructive:
                    raise ValidationFailure(
                        diff.destructive_changes(),
                        message="Destructive schema change requires confirmation",
                    )

                plan = self.sync_plan(builder, parsed, diff, allow_destructive)
                logger.info(
                    "Syncing %s: %d new table(s), %d altered, %d dropped",
                    builder.namespace,
                    len(diff.create_tables),
                    len(set(diff.add_columns) | set(diff.drop_columns) | set(diff.type_changes)),
                    len(diff.drop_tables),
                )
                executed = self._execute(cur, plan.statements)

        altered = set(diff.add_columns)
        if allow_destructive:
            altered |= set(diff.drop_columns) | set(diff.type_changes)
        return ProvisionResult(
            namespace=builder.namespace,
            tables_created=list(plan.tables),
            tables_altered=sorted(altered),
            tables_dropped=list(diff.drop_tables) if allow_destructive else [],
            statements=executed,
        )

    def deprovision(self, project_id: str, tables: Optional[List[str]] = None) -> ProvisionResult:
        builder = self._builder(project_id)
        if tables is None:
            statements = [Statement(builder.drop_namespace(), None, "drop")]
        else:
            statements = []
            for table in tables:
                statements.extend(self._table_step(
                    table,
                    lambda t=table: [Statement(builder.drop_table(t), t, "drop")],
                ))

        logger.info("Deprovisioning %s (%s)", builder.namespace, "all" if tables is None else ", ".join(tables))
        with self._connection_factory() as conn:
            with conn.cursor() as cur:
                executed = self._execute(cur, statements)
        return ProvisionResult(
            namespace=builder.namespace,
            tables_dropped=list(tables or []),
            statements=executed,
        )
