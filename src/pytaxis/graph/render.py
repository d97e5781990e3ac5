"""Text renderings of a Graph: Mermaid, Graphviz DOT and a level view."""

from __future__ import annotations

from collections.abc import Callable, Hashable
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pytaxis.graph.dag import Graph

NodeLabel = Callable[[Hashable, Any], str]


def _default_label(node: Hashable, _data: Any) -> str:
    return str(node).replace("_", " ").title()


def _escape_mermaid(text: str) -> str:
    return text.replace('"', "&quot;").replace("<", "&lt;").replace(">", "&gt;")


def _escape_dot(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _edge_label(data: Any) -> str | None:
    if isinstance(data, dict) and data.get("label") is not None:
        return str(data["label"])
    return None


def to_mermaid(
    graph: Graph,
    direction: str = "TD",
    node_label: NodeLabel = _default_label,
    node_style: Callable[[Hashable, Any], str | None] | None = None,
    show_groups: bool = False,
    styles: dict[str, str] | None = None,
    title: str | None = None,
) -> str:
    """
    Render the graph as a Mermaid flowchart.

    Example output:
    ```
    graph TD
      a[A]
      b[B]
      a --> b
    ```
    """
    lines: list[str] = []
    if title:
        lines += ["---", f"title: {title}", "---"]
    lines.append(f"graph {direction}")

    for node in graph.nodes():
        data = graph.get_node(node)
        line = f"  {node}[{_escape_mermaid(node_label(node, data))}]"
        style = node_style(node, data) if node_style else None
        lines.append(f"{line}:::{style}" if style else line)

    for source, target, data in graph.edges():
        label = _edge_label(data)
        if label:
            lines.append(f"  {source} -->|{_escape_mermaid(label)}| {target}")
        else:
            lines.append(f"  {source} --> {target}")

    if show_groups:
        for name, members in graph.groups.items():
            lines.append(f"  subgraph {name}[{_default_label(name, None)}]")
            lines += [f"    {member}" for member in sorted(members, key=str)]
            lines.append("  end")

    for css_class, style in (styles or {}).items():
        lines.append(f"  classDef {css_class} {style}")

    return "\n".join(lines)


def to_dot(
    graph: Graph,
    name: str = "G",
    rankdir: str = "TB",
    node_label: NodeLabel = _default_label,
    node_attrs: Callable[[Hashable, Any], str | None] | None = None,
    node_defaults: str | None = "shape=box, style=rounded",
) -> str:
    """Render the graph as a Graphviz digraph; groups become clusters."""
    lines = [f"digraph {name} {{", f"  rankdir={rankdir};"]
    if node_defaults:
        lines.append(f"  node [{node_defaults}];")
    lines.append("")

    for node in graph.nodes():
        data = graph.get_node(node)
        attrs = [f"label={_escape_dot(node_label(node, data))}"]
        extra = node_attrs(node, data) if node_attrs else None
        if extra:
            attrs.append(extra)
        lines.append(f"  {_escape_dot(str(node))} [{', '.join(attrs)}];")
    lines.append("")

    for source, target, data in graph.edges():
        label = _edge_label(data)
        suffix = f" [label={_escape_dot(label)}]" if label else ""
        lines.append(f"  {_escape_dot(str(source))} -> {_escape_dot(str(target))}{suffix};")

    for group, members in graph.groups.items():
        lines.append(f"  subgraph cluster_{group} {{")
        lines.append(f"    label={_escape_dot(group)};")
        lines += [f"    {_escape_dot(str(m))};" for m in sorted(members, key=str)]
        lines.append("  }")

    lines.append("}")
    return "\n".join(lines)


def level_graph(graph: Graph) -> str:
    """
    Level-based view showing which nodes can run in parallel.

    **Example output**:
    ```
    DAG Execution Levels (4 nodes):

    Level 0: [fetch]
             ↓
    Level 1: [validate] [enrich] (2 parallel steps)
             ↓
    Level 2: [store]
    ```
    """
    output = f"DAG Execution Levels ({len(graph)} nodes):\n\n"
    levels = graph.levels()
    max_level = max(levels) if levels else 0

    for level, nodes in levels.items():
        parallel_note = f" ({len(nodes)} parallel steps)" if len(nodes) > 1 else ""
        names = "] [".join(str(n) for n in nodes)
        output += f"Level {level}: [{names}]{parallel_note}\n"
        if level < max_level:
            output += "         ↓\n"

    return output
