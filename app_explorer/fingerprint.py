from __future__ import annotations

"""Content-addressed identity for screens and elements.

Screens are identified by a SHA-256 over a normalised serialisation of their
hierarchy (activity plus every node's position, class, text and resource id).
Collisions are treated as negligible; there is no collision recovery.
"""

import hashlib
import html
import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

import networkx as nx

from .knowledge import BoundingBox, Element, ScreenState

logger = logging.getLogger(__name__)

_NODE_RE = re.compile(r"<node\b([^>]*?)/?>")
_ATTR_RE = re.compile(r'([\w:-]+)="([^"]*)"')
_BOUNDS_RE = re.compile(r"\[(-?\d+),(-?\d+)\]\[(-?\d+),(-?\d+)\]")

# Class-name fragments the uiautomator dump uses for controls that respond to taps
# even when the ``clickable`` attribute is not set.
_INTERACTIVE_CLASS_HINTS = ("Button", "EditText", "CheckBox", "Switch", "Spinner")


def _sha256(payload: str | bytes) -> str:
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def element_fingerprint(
    bounds: BoundingBox, class_name: str, text: str = "", resource_id: str = ""
) -> str:
    """Stable id for a control: same position, class, text and id => same fingerprint."""
    props = f"{bounds.left}-{bounds.top}-{bounds.right}-{bounds.bottom}-{class_name}-{text}-{resource_id}"
    return _sha256(props)


def screen_fingerprint(activity_id: str, elements: Iterable[Element]) -> str:
    canon = "|".join(e.fingerprint for e in elements)
    return _sha256(f"{activity_id}#{canon}")


def image_fingerprint(image: Optional[bytes]) -> str:
    return _sha256(image or b"")


def is_interactable(class_name: str, resource_id: str, clickable: bool, enabled: bool = True) -> bool:
    if not enabled:
        return False
    if clickable:
        return True
    if any(hint in class_name for hint in _INTERACTIVE_CLASS_HINTS):
        return True
    return "View" in class_name and "btn" in resource_id


def parse_hierarchy(xml_data: str) -> List[Element]:
    """Turn a uiautomator XML dump into :class:`Element` objects.

    Nodes without bounds are dropped. Parsing is attribute-order independent
    and tolerant of the slightly malformed dumps some devices produce.
    """
    if not xml_data:
        return []
    elements: List[Element] = []
    for match in _NODE_RE.finditer(xml_data):
        attrs: Dict[str, str] = {k: html.unescape(v) for k, v in _ATTR_RE.findall(match.group(1))}
        bounds_match = _BOUNDS_RE.fullmatch(attrs.get("bounds", ""))
        if not bounds_match:
            continue
        bbox = BoundingBox(*(int(g) for g in bounds_match.groups()))
        class_name = attrs.get("class", "unknown") or "unknown"
        text = attrs.get("text", "")
        resource_id = attrs.get("resource-id", "")
        elements.append(
            Element(
                fingerprint=element_fingerprint(bbox, class_name, text, resource_id),
                bounding_box=bbox,
                class_name=class_name,
                text=text,
                resource_id=resource_id,
                interactable=is_interactable(
                    class_name,
                    resource_id,
                    attrs.get("clickable") == "true",
                    attrs.get("enabled", "true") != "false",
                ),
                content_desc=attrs.get("content-desc", ""),
            )
        )
    logger.debug("Parsed %d UI elements from hierarchy", len(elements))
    return elements


def find_node_xml(xml_data: str, bounds: BoundingBox) -> str:
    """Return the raw ``<node ...>`` tag whose bounds match *bounds* (empty if none)."""
    needle = f'bounds="[{bounds.left},{bounds.top}][{bounds.right},{bounds.bottom}]"'
    for match in _NODE_RE.finditer(xml_data or ""):
        if needle in match.group(0):
            return match.group(0)
    return ""


@dataclass(frozen=True)
class RegistrationResult:
    is_new: bool
    canonical_state: ScreenState


class FingerprintStore:
    """Append-only set of discovered screens plus the parent/child graph between them."""

    def __init__(self) -> None:
        self._by_fingerprint: Dict[str, ScreenState] = {}
        self._by_id: Dict[int, ScreenState] = {}
        self._g: nx.DiGraph = nx.DiGraph()

    # --- state helpers ----------------------------------------------------
    def __contains__(self, fingerprint: object) -> bool:
        return fingerprint in self._by_fingerprint

    def __len__(self) -> int:
        return len(self._by_fingerprint)

    def next_id(self) -> int:
        return len(self._by_fingerprint) + 1

    def lookup(self, fingerprint: str) -> Optional[ScreenState]:
        return self._by_fingerprint.get(fingerprint)

    def get(self, state_id: int) -> Optional[ScreenState]:
        return self._by_id.get(state_id)

    def register_if_new(self, fingerprint: str, state: ScreenState) -> RegistrationResult:
        existing = self._by_fingerprint.get(fingerprint)
        if existing is not None:
            return RegistrationResult(is_new=False, canonical_state=existing)
        self._by_fingerprint[fingerprint] = state
        self._by_id[state.id] = state
        self._g.add_node(state.id, obj=state)
        if state.parent_state_id is not None:
            self.link(state.parent_state_id, state.id)
        return RegistrationResult(is_new=True, canonical_state=state)

    @property
    def states(self) -> List[ScreenState]:
        return list(self._by_fingerprint.values())

    # --- edge helpers -----------------------------------------------------
    def link(self, parent_id: int, child_id: int) -> bool:
        """Add a parent -> child edge; returns False when the pair already exists."""
        if parent_id == child_id or self._g.has_edge(parent_id, child_id):
            return False
        self._g.add_edge(parent_id, child_id)
        return True

    @property
    def edges(self) -> List[Tuple[int, int]]:
        return list(self._g.edges())

    # convenience ----------------------------------------------------------
    def to_networkx(self) -> nx.DiGraph:
        return self._g
