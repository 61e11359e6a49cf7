"""
Postgres plans are trees of nodes, not pipelines. We cut the tree at pipeline breakers (nodes that
consume all of their input before producing any output) and turn each node into one operating unit.
"""

from typing import Any, Iterator, Optional

import pglast  # type: ignore
from pglast.visitors import Continue, Visitor  # type: ignore

from pilot.metrics import ExecutionOperatingUnitType, OperatingUnitFeature

OUType = ExecutionOperatingUnitType

NODE_TYPE_TO_OU_TYPE = {
    "Seq Scan": OUType.SEQ_SCAN,
    "Index Scan": OUType.IDX_SCAN,
    "Index Only Scan": OUType.IDX_SCAN,
    "Bitmap Heap Scan": OUType.IDX_SCAN,
    "Bitmap Index Scan": OUType.IDX_SCAN,
    "Hash Join": OUType.HASHJOIN_PROBE,
    "Nested Loop": OUType.NLJOIN,
    "Merge Join": OUType.MERGEJOIN,
    "Limit": OUType.LIMIT,
}

MODIFY_OPERATION_TO_OU_TYPE = {
    "Insert": OUType.INSERT,
    "Update": OUType.UPDATE,
    "Delete": OUType.DELETE,
}

# {node type: (OU that ends the child pipeline, OU that continues the parent pipeline)}
PIPELINE_BREAKERS: dict[str, tuple[OUType, Optional[OUType]]] = {
    "Hash": (OUType.HASHJOIN_BUILD, None),
    "Sort": (OUType.SORT_BUILD, OUType.SORT_ITERATE),
    "Incremental Sort": (OUType.SORT_BUILD, OUType.SORT_ITERATE),
    "Aggregate": (OUType.AGG_BUILD, OUType.AGG_ITERATE),
    "Materialize": (OUType.MATERIALIZE, None),
}


def _inclusive_elapsed_us(node: dict[str, Any]) -> float:
    # Actual Total Time is in milliseconds and per loop.
    return (
        float(node.get("Actual Total Time", 0.0))
        * float(node.get("Actual Loops", 1.0))
        * 1000.0
    )


def node_attributes(node: dict[str, Any], include_elapsed: bool = True) -> tuple[float, ...]:
    """
    The attribute vector of a plan node, laid out as OU_ATTRIBUTE_NAMES. The elapsed time excludes
    the time spent in the node's children.
    """
    elapsed_us = 0.0
    if include_elapsed:
        elapsed_us = _inclusive_elapsed_us(node) - sum(
            _inclusive_elapsed_us(child) for child in node.get("Plans", [])
        )
    return (
        float(node.get("Plan Rows", 0)),
        float(node.get("Plan Width", 0)),
        float(node.get("Actual Rows", 0)),
        float(node.get("Actual Loops", 0)),
        float(node.get("Startup Cost", 0.0)),
        float(node.get("Total Cost", 0.0)),
        float(node.get("Shared Hit Blocks", 0)),
        float(node.get("Shared Read Blocks", 0)),
        max(elapsed_us, 0.0),
    )


def node_ou_type(node: dict[str, Any]) -> OUType:
    node_type = node["Node Type"]
    if node_type == "ModifyTable":
        return MODIFY_OPERATION_TO_OU_TYPE.get(node.get("Operation", ""), OUType.OTHER)
    return NODE_TYPE_TO_OU_TYPE.get(node_type, OUType.OTHER)


def plan_to_pipelines(plan: dict[str, Any]) -> list[list[OperatingUnitFeature]]:
    """
    Split the plan into pipelines, in the order they finish. The pipeline containing the root comes
    last and ends with an OUTPUT unit.
    """
    pipelines: list[list[OperatingUnitFeature]] = []

    def visit(node: dict[str, Any], current: list[OperatingUnitFeature]) -> None:
        node_type = node["Node Type"]
        children = node.get("Plans", [])
        if node_type in PIPELINE_BREAKERS:
            build_ou_type, iterate_ou_type = PIPELINE_BREAKERS[node_type]
            build_pipeline: list[OperatingUnitFeature] = []
            for child in children:
                visit(child, build_pipeline)
            build_pipeline.append(
                OperatingUnitFeature(build_ou_type, node_attributes(node))
            )
            pipelines.append(build_pipeline)
            if iterate_ou_type is not None:
                current.append(
                    OperatingUnitFeature(
                        iterate_ou_type, node_attributes(node, include_elapsed=False)
                    )
                )
            return

        for child in children:
            visit(child, current)
        current.append(OperatingUnitFeature(node_ou_type(node), node_attributes(node)))

    root_pipeline: list[OperatingUnitFeature] = []
    visit(plan, root_pipeline)
    root_pipeline.append(
        OperatingUnitFeature(OUType.OUTPUT, node_attributes(plan, include_elapsed=False))
    )
    pipelines.append(root_pipeline)
    return [pipeline for pipeline in pipelines if len(pipeline) > 0]


def traverse(stmt: pglast.ast.Node) -> Iterator[Any]:
    """
    Walk every node below stmt, the way .traverse() did in older pglast versions.
    """
    visitor = Visitor()
    generator = visitor.iterate(stmt)

    try:
        item = generator.send(None)
        yield item
    except StopIteration:
        return

    while True:
        try:
            item = generator.send(Continue)
            yield item
        except StopIteration:
            return


def extract_relations(stmts: Any) -> list[str]:
    """
    The (possibly schema-qualified) names of the relations a statement reads or writes, minus CTEs.
    """
    relations: list[str] = []
    ctes = set()
    for stmt in stmts:
        for _, node in traverse(stmt):
            if isinstance(node, pglast.ast.CommonTableExpr):
                ctes.add(node.ctename)
            elif isinstance(node, pglast.ast.RangeVar):
                relname = (
                    f"{node.schemaname}.{node.relname}"
                    if node.schemaname
                    else node.relname
                )
                if relname not in relations:
                    relations.append(relname)
    return [r for r in relations if r not in ctes]
