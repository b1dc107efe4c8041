from __future__ import annotations

from typing import Any, Dict, List, Optional
from xml.etree import ElementTree as ET
from xml.sax.saxutils import escape


def xml_text(val: Any) -> str:
    return escape("" if val is None else str(val))


def local_name(tag: str) -> str:
    """Strip a ``{namespace}`` prefix from an ElementTree tag."""
    if "}" in tag:
        return tag.split("}", 1)[1]
    return tag


def element_to_dict(element: ET.Element) -> Dict[str, Any]:
    """Convert an element into nested dicts.

    Attributes go under ``@attributes``, leaf text under ``#text``, and
    repeated child tags collapse into lists. Namespaces are dropped from keys.
    """
    result: Dict[str, Any] = {}

    if element.attrib:
        result["@attributes"] = {local_name(k): v for k, v in element.attrib.items()}

    children = list(element)
    if children:
        for child in children:
            name = local_name(child.tag)
            value = element_to_dict(child)
            if name in result:
                if not isinstance(result[name], list):
                    result[name] = [result[name]]
                result[name].append(value)
            else:
                result[name] = value
    else:
        result["#text"] = element.text or ""

    return result


def parse_xml(xml_string: str) -> Dict[str, Any]:
    """Parse an XML document into ``{root_tag: {...}}``."""
    root = ET.fromstring(xml_string)
    return {local_name(root.tag): element_to_dict(root)}


def find_text(element: ET.Element, path: str, ns: Optional[Dict[str, str]] = None) -> Optional[str]:
    value = element.findtext(path, default=None, namespaces=ns)
    if value is None:
        return None
    return value.strip()


def as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]
