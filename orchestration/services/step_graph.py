"""Static checks on a workflow's step graph.

A step's success edge is ``on_success`` when set, otherwise the next step
in list order; its failure edge is ``on_failure`` when set. A graph is
accepted only if every run through it terminates.
"""

from typing import Dict, List, Optional, Sequence

from orchestration.core.errors import InvalidRequest


def build_graph(steps: Sequence[dict]) -> Dict[str, List[str]]:
    graph: Dict[str, List[str]] = {}
    for index, step in enumerate(steps):
        edges = []
        if step.get("on_success"):
            edges.append(step["on_success"])
        elif index + 1 < len(steps):
            edges.append(steps[index + 1]["id"])
        if step.get("on_failure"):
            edges.append(step["on_failure"])
        graph[step["id"]] = edges
    return graph


def find_cycle(graph: Dict[str, List[str]]) -> Optional[List[str]]:
    """Return one cycle as a list of step ids, or None."""
    white, grey, black = 0, 1, 2
    color = {node: white for node in graph}
    path: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        color[node] = grey
        path.append(node)
        for nxt in graph.get(node, ()):
            if color.get(nxt) == grey:
                return path[path.index(nxt):] + [nxt]
            if color.get(nxt) == white:
                found = visit(nxt)
                if found:
                    return found
        path.pop()
        color[node] = black
        return None

    for node in graph:
        if color[node] == white:
            found = visit(node)
            if found:
                return found
    return None


def validate_steps(steps: Sequence[dict]) -> None:
    seen = set()
    for step in steps:
        if step["id"] in seen:
            raise InvalidRequest(f"Duplicate step id: {step['id']}")
        seen.add(step["id"])

    for step in steps:
        for edge in ("on_success", "on_failure"):
            target = step.get(edge)
            if target is None:
                continue
            if target == step["id"]:
                raise InvalidRequest(f"Step {step['id']} {edge} points to itself")
            if target not in seen:
                raise InvalidRequest(f"Step {step['id']} {edge} references unknown step: {target}")

    cycle = find_cycle(build_graph(steps))
    if cycle:
        raise InvalidRequest("Step graph contains a cycle: " + " -> ".join(cycle))
