"""Generic attribute-preserving XML tree and ordered-candidate path lookup.

Vendor dialects disagree on where a field lives, so extraction never walks a
fixed schema. Each canonical field is read with ``first_text(node, *paths)``:
the first path that yields a non-empty value wins.
"""

from __future__ import annotations

from typing import Iterator, Optional

from lxml import etree

from collision_sync.core.exceptions import StructuralParseError
from collision_sync.parsers.values import present


class XmlNode:
    """One element: local tag name, attributes, text and ordered children."""

    __slots__ = ("tag", "attrs", "text", "children")

    def __init__(self, tag: str, attrs: dict[str, str] | None = None, text: str = "",
                 children: list[XmlNode] | None = None) -> None:
        self.tag = tag
        self.attrs = attrs or {}
        self.text = text
        self.children = children or []

    def __repr__(self) -> str:
        return f"XmlNode({self.tag!r}, children={len(self.children)})"

    def __iter__(self) -> Iterator[XmlNode]:
        return iter(self.children)

    def child(self, name: str) -> Optional[XmlNode]:
        for node in self.children:
            if node.tag == name:
                return node
        return None

    def children_named(self, name: str) -> list[XmlNode]:
        return [node for node in self.children if node.tag == name]

    def find(self, path: str) -> Optional[XmlNode]:
        found = self.find_all(path)
        return found[0] if found else None

    def find_all(self, path: str) -> list[XmlNode]:
        """All nodes at a ``/``-separated path, repeated elements included."""
        nodes = [self]
        for segment in path.split("/"):
            nodes = [match for node in nodes for match in node.children_named(segment)]
            if not nodes:
                break
        return nodes

    def text_at(self, path: str) -> str:
        """Text of the node at ``path``, falling back to an attribute of that name."""
        node = self.find(path)
        if node is not None:
            return node.text
        parent_path, _, leaf = path.rpartition("/")
        parent = self.find(parent_path) if parent_path else self
        if parent is None:
            return ""
        return parent.attrs.get(leaf.lstrip("@"), "")


def first_node(node: Optional[XmlNode], *paths: str) -> Optional[XmlNode]:
    if node is None:
        return None
    for path in paths:
        found = node.find(path)
        if found is not None:
            return found
    return None


def first_text(node: Optional[XmlNode], *paths: str) -> str:
    """First non-empty, non-placeholder value among ``paths``; "" when none."""
    if node is None:
        return ""
    for path in paths:
        value = present(node.text_at(path))
        if value:
            return value
    return ""


def _convert(element: etree._Element) -> XmlNode:
    children = [_convert(child) for child in element if isinstance(child.tag, str)]
    attrs = {etree.QName(key).localname: value for key, value in element.attrib.items()}
    return XmlNode(
        tag=etree.QName(element).localname,
        attrs=attrs,
        text=(element.text or "").strip(),
        children=children,
    )


def parse_xml(content: str | bytes) -> XmlNode:
    """Parse XML into an ``XmlNode`` tree with namespaces stripped.

    Raises:
        StructuralParseError: content is empty or not well-formed.
    """
    if isinstance(content, str):
        data = content.lstrip("\ufeff \t\r\n").encode("utf-8")
        parser = etree.XMLParser(encoding="utf-8", resolve_entities=False, no_network=True,
                                 remove_comments=True, remove_pis=True)
    else:
        data = content.lstrip(b"\xef\xbb\xbf \t\r\n")
        parser = etree.XMLParser(resolve_entities=False, no_network=True,
                                 remove_comments=True, remove_pis=True)
    if not data:
        raise StructuralParseError("BMS", "file is empty")
    try:
        document = etree.fromstring(data, parser=parser)
    except etree.XMLSyntaxError as exc:
        raise StructuralParseError("BMS", f"XML is not well-formed: {exc}") from exc
    if document is None:
        raise StructuralParseError("BMS", "no root element")
    return _convert(document)
