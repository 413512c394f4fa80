"""
Atom Feed Codec

Converts Service Bus management Atom/XML bodies into plain records and back.
A feed becomes an ``AtomFeed`` (a list of entry records carrying the feed's
``next`` link); a single entry becomes one record.

Record shape::

    {
        "Id": "https://ns.servicebus.windows.net/orders?api-version=2017-04",
        "Title": "orders",
        "Published": "...",
        "Updated": "...",
        "QueueDescription": {"LockDuration": "PT1M", "RequiresSession": "false", ...},
    }

Author: sbclient contributors
Date: 2026-10-17
"""

import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .constants import (
    ATOM_NAMESPACE,
    SERVICEBUS_NAMESPACE,
    XML_DECLARATION,
    XSI_NAMESPACE,
)
from .exceptions import ParseError


XSI_TYPE = f"{{{XSI_NAMESPACE}}}type"
XSI_NIL = f"{{{XSI_NAMESPACE}}}nil"
XSD_NAMESPACE = "http://www.w3.org/2001/XMLSchema"

# XML Schema simple types a typed leaf may carry; such leaves stay text.
XSD_SIMPLE_TYPES = frozenset({
    "string", "boolean", "int", "long", "short", "byte", "unsignedInt", "unsignedLong",
    "unsignedShort", "unsignedByte", "double", "float", "decimal", "dateTime", "duration",
    "anyURI", "base64Binary", "char", "guid",
})

ENTRY_FIELDS = {
    "id": "Id",
    "title": "Title",
    "published": "Published",
    "updated": "Updated",
}


class AtomFeed(list):
    """Entry records of a feed, plus the feed-level links."""

    def __init__(
        self,
        records: Iterable[Dict[str, Any]] = (),
        next_link: Optional[str] = None,
        title: Optional[str] = None,
    ):
        super().__init__(records)
        self.next_link = next_link
        self.title = title

    def __repr__(self) -> str:
        return f"AtomFeed({list.__repr__(self)}, next_link={self.next_link!r})"


def _local_name(tag: str) -> str:
    return tag.split("}", 1)[-1]


def _type_name(xsi_type: str) -> str:
    return xsi_type.split(":", 1)[-1]


def _element_to_value(elem: ET.Element) -> Any:
    """
    Leaf elements become text (``None`` for ``i:nil``); others become dicts.

    A typed leaf (``<Value i:type="d:string">red</Value>``) is still text; only
    an empty leaf of a non-XSD type (``<Action i:type="EmptyRuleAction"/>``)
    becomes ``{"@type": ...}``.
    """
    children = list(elem)
    xsi_type = elem.get(XSI_TYPE)

    if not children:
        if elem.get(XSI_NIL) == "true":
            return None
        text = elem.text if elem.text is not None else ""
        if xsi_type is None or text.strip() or _type_name(xsi_type) in XSD_SIMPLE_TYPES:
            return text

    value: Dict[str, Any] = {}
    if xsi_type is not None:
        value["@type"] = _type_name(xsi_type)

    for child in children:
        key = _local_name(child.tag)
        child_value = _element_to_value(child)
        if key in value:
            if not isinstance(value[key], list):
                value[key] = [value[key]]
            value[key].append(child_value)
        else:
            value[key] = child_value

    return value


def _entry_to_record(entry: ET.Element) -> Dict[str, Any]:
    record: Dict[str, Any] = {}
    for child in entry:
        name = _local_name(child.tag)
        if name in ENTRY_FIELDS:
            record[ENTRY_FIELDS[name]] = (child.text or "").strip()
        elif name == "content":
            for description in child:
                record[_local_name(description.tag)] = _element_to_value(description)
    return record


def parse_atom(text: str) -> Union[AtomFeed, Dict[str, Any]]:
    """
    Parse an Atom/XML management body.

    Args:
        text: Response body

    Returns:
        AtomFeed for ``<feed>`` documents, a record for ``<entry>`` documents,
        and ``{root_tag: value}`` for anything else (e.g. ``<Error>``).

    Raises:
        ParseError: The body is not well-formed XML
    """
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise ParseError(f"Invalid XML body: {e}")

    tag = _local_name(root.tag)

    if tag == "feed":
        feed = AtomFeed()
        for child in root:
            name = _local_name(child.tag)
            if name == "entry":
                feed.append(_entry_to_record(child))
            elif name == "link" and child.get("rel") == "next":
                feed.next_link = child.get("href")
            elif name == "title":
                feed.title = child.text
        return feed

    if tag == "entry":
        return _entry_to_record(root)

    return {tag: _element_to_value(root)}


# ========== Rendering ==========

def _append_value(parent: ET.Element, key: str, value: Any) -> None:
    if isinstance(value, list):
        for item in value:
            _append_value(parent, key, item)
        return

    elem = ET.SubElement(parent, key)
    if value is None:
        elem.set("i:nil", "true")
    elif isinstance(value, dict):
        for child_key, child_value in value.items():
            if child_key == "@type":
                elem.set("i:type", child_value)
            elif child_key == "#text":
                elem.text = str(child_value)
            else:
                _append_value(elem, child_key, child_value)
    elif isinstance(value, bool):
        elem.text = str(value).lower()
    elif isinstance(value, datetime):
        elem.text = value.isoformat()
    else:
        elem.text = str(value)


def build_description(tag: str, fields: Dict[str, Any]) -> ET.Element:
    """Build a ``<QueueDescription>``-style element from a field mapping."""
    root = ET.Element(tag, {
        "xmlns": SERVICEBUS_NAMESPACE,
        "xmlns:i": XSI_NAMESPACE,
        "xmlns:d": XSD_NAMESPACE,
    })
    for key, value in fields.items():
        _append_value(root, key, value)
    return root


def entry_record(title: str, entry_id: str, tag: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    """
    Record that ``parse_atom`` would produce for one rendered entry.

    Used by in-process transports so that decoders see exactly the strings
    they would get over HTTP.
    """
    description = ET.fromstring(ET.tostring(build_description(tag, fields), encoding="unicode"))
    now = datetime.now(timezone.utc).isoformat()
    return {
        "Id": entry_id,
        "Title": title,
        "Published": now,
        "Updated": now,
        tag: _element_to_value(description),
    }


def render_feed(
    title: str,
    feed_id: str,
    entries: List[Tuple[str, str, str, Dict[str, Any]]],
    next_link: Optional[str] = None,
) -> str:
    """
    Render an Atom feed.

    Args:
        title: Feed title
        feed_id: Feed id (the request URL)
        entries: ``(title, id, description_tag, fields)`` per entry
        next_link: Href of the ``next`` link, if more pages exist

    Returns:
        XML string
    """
    now = datetime.now(timezone.utc).isoformat()
    root = ET.Element("feed", {"xmlns": ATOM_NAMESPACE})
    ET.SubElement(root, "title", {"type": "text"}).text = title
    ET.SubElement(root, "id").text = feed_id
    ET.SubElement(root, "updated").text = now
    ET.SubElement(root, "link", {"rel": "self", "href": feed_id})
    if next_link:
        ET.SubElement(root, "link", {"rel": "next", "href": next_link})

    for entry_title, entry_id, tag, fields in entries:
        entry = ET.SubElement(root, "entry")
        ET.SubElement(entry, "id").text = entry_id
        ET.SubElement(entry, "title", {"type": "text"}).text = entry_title
        ET.SubElement(entry, "published").text = now
        ET.SubElement(entry, "updated").text = now
        content = ET.SubElement(entry, "content", {"type": "application/xml"})
        content.append(build_description(tag, fields))

    return XML_DECLARATION + "\n" + ET.tostring(root, encoding="unicode")


def render_error(code: str, detail: str) -> str:
    """Render a management error body."""
    root = ET.Element("Error")
    ET.SubElement(root, "Code").text = code
    ET.SubElement(root, "Detail").text = detail
    return XML_DECLARATION + ET.tostring(root, encoding="unicode")
