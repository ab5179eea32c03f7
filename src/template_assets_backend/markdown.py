"""
Conversion of ProseMirror document trees to Markdown.

Data templates are authored in a ProseMirror editor and stored as its JSON
node tree. Document builds need Markdown, so every imported template body is
run through :func:`convert` once and both forms are kept.

The converter is a single recursive pass with one handler per node type.
Anything outside the supported grammar raises :class:`InvalidNodeType` or
:class:`InvalidMarkType` instead of being dropped, so a template that cannot
be represented faithfully never imports with silently missing content.

Example:
    >>> convert({"type": "doc", "content": [{"type": "paragraph", "content": [
    ...     {"type": "text", "text": "Hello"},
    ...     {"type": "text", "text": "World", "marks": [{"type": "bold"}]}]}]})
    'Hello**World**'
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping

from .errors import InvalidMarkType, InvalidNodeType

Node = Mapping[str, Any]


def convert(document: Node) -> str:
    """
    Convert a ProseMirror ``doc`` node to Markdown.

    Args:
        document: The decoded ProseMirror JSON; its root must be a ``doc`` node

    Returns:
        Markdown with top-level blocks separated by a blank line

    Raises:
        InvalidNodeType: If the root is not a doc or any node is unsupported
        InvalidMarkType: If a text run carries an unsupported mark
    """
    if not isinstance(document, Mapping) or document.get("type") != "doc":
        raise InvalidNodeType(f"Invalid node type: {_type_of(document)}")
    return "\n\n".join(convert_node(node) for node in document.get("content") or [])


def convert_node(node: Node) -> str:
    node_type = _type_of(node)
    handler = _NODE_HANDLERS.get(node_type)
    if handler is None:
        raise InvalidNodeType(f"Invalid node type: {node_type}")
    return handler(node)


def _type_of(node: Any) -> str:
    if isinstance(node, Mapping):
        return str(node.get("type"))
    return type(node).__name__


def _children(node: Node, separator: str) -> str:
    return separator.join(convert_node(child) for child in node.get("content") or [])


def _paragraph(node: Node) -> str:
    if "content" not in node:
        return "\n"
    return _children(node, "")


def _heading(node: Node) -> str:
    level = (node.get("attrs") or {}).get("level")
    if not isinstance(level, int) or "content" not in node:
        raise InvalidNodeType("Invalid heading format.")
    return "#" * level + " " + _children(node, "")


def _text(node: Node) -> str:
    if "text" not in node:
        raise InvalidNodeType("Invalid text format.")
    text = node["text"]
    # the first mark wraps outermost
    for mark in reversed(node.get("marks") or []):
        text = convert_mark(text, mark)
    return text


def _bullet_list(node: Node) -> str:
    return _children(node, "\n")


def _ordered_list(node: Node) -> str:
    items = node.get("content") or []
    return "\n".join(f"{index}. {convert_node(item)}" for index, item in enumerate(items, start=1))


def _list_item(node: Node) -> str:
    return _children(node, "")


def _blockquote(node: Node) -> str:
    return _prefix_lines(_children(node, "\n"), "> ")


def _code_block(node: Node) -> str:
    return f"```\n{_children(node, '')}\n```"


def _image(node: Node) -> str:
    attrs = node.get("attrs") or {}
    if "src" not in attrs or "alt" not in attrs:
        raise InvalidNodeType("Invalid image format.")
    return f"![{attrs['alt'] or ''}]({attrs['src']})"


def _holder(node: Node) -> str:
    attrs = node.get("attrs") or {}
    named = attrs.get("named")
    if named:
        return str(named)
    if "name" in attrs:
        return f"[{attrs['name']}]"
    raise InvalidNodeType("Invalid holder format.")


def _table(node: Node) -> str:
    rows = node.get("content") or []
    if not rows:
        return ""
    header = _table_row(rows[0], is_header=True)
    separator = _table_separator(rows[0])
    body = "\n".join(_table_row(row, is_header=False) for row in rows[1:])
    return "\n".join([header, separator, body])


def _hard_break(node: Node) -> str:
    return "  \n"


def _horizontal_rule(node: Node) -> str:
    return "---"


_NODE_HANDLERS: Dict[str, Callable[[Node], str]] = {
    "paragraph": _paragraph,
    "heading": _heading,
    "text": _text,
    "bulletList": _bullet_list,
    "orderedList": _ordered_list,
    "listItem": _list_item,
    "blockquote": _blockquote,
    "codeBlock": _code_block,
    "image": _image,
    "holder": _holder,
    "table": _table,
    "hardBreak": _hard_break,
    "horizontalRule": _horizontal_rule,
}


def convert_mark(text: str, mark: Node) -> str:
    mark_type = _type_of(mark)
    if mark_type == "bold":
        return f"**{text}**"
    if mark_type == "italic":
        return f"*{text}*"
    if mark_type == "code":
        return f"`{text}`"
    if mark_type == "strike":
        return f"~~{text}~~"
    if mark_type == "link":
        href = (mark.get("attrs") or {}).get("href")
        if href is not None:
            return f"[{text}]({href})"
    raise InvalidMarkType(f"Invalid mark type: {mark_type}")


def _prefix_lines(text: str, prefix: str) -> str:
    return "\n".join(prefix + line for line in text.split("\n"))


# Table utility functions


def _table_cells(row: Node) -> List[Node]:
    return list(row.get("content") or [])


def _table_cell(cell: Node, is_header: bool) -> str:
    cell_type = _type_of(cell)
    if cell_type == "tableControllerCell":
        return ""
    if cell_type != "tableCell":
        raise InvalidNodeType(f"Invalid node type: {cell_type}")
    content = _children(cell, " ")
    return content if is_header else content.strip()


def _table_row(row: Node, is_header: bool) -> str:
    return _wrap_table_row(" | ".join(_table_cell(cell, is_header) for cell in _table_cells(row)))


def _table_separator(row: Node) -> str:
    return _wrap_table_row(" | ".join("" if _type_of(cell) == "tableControllerCell" else "---" for cell in _table_cells(row)))


def _wrap_table_row(row: str) -> str:
    return "| " + row + " |"
