"""Event topic trees and topic filters.

ONVIF devices advertise their event topics as a nested XML document
(``GetEventProperties`` -> ``TopicSet``). ``TopicTree`` flattens it into
slash paths such as ``tns1:Device/Trigger/DigitalInput`` (local names only,
so ``Device/Trigger/DigitalInput``).
"""

from dataclasses import dataclass
from typing import Any, Collection, Iterable, Iterator, Optional

from lxml import etree

from ronin_onvif.config import get_settings
from ronin_onvif.utils.payload import get_field

ONVIF_TOPIC_NS = "http://www.onvif.org/ver10/topics"
WSNT_NS = "http://docs.oasis-open.org/wsn/b-2"


def local_name(node: Any) -> Optional[str]:
    """Local name of an element, or None for comments, PIs and text."""
    tag = getattr(node, "tag", None)
    if not isinstance(tag, str):
        return None
    return etree.QName(tag).localname


def walk_topics(
    nodes: Iterable[Any], prefix: str = "", prune: Collection[str] = ()
) -> Iterator[str]:
    """Yield the slash path of every element, depth-first pre-order.

    Args:
        nodes: Sibling elements to walk (non-element nodes are skipped)
        prefix: Path of the parent element ("" for roots)
        prune: Local names whose subtrees are skipped entirely
    """
    for node in nodes:
        name = local_name(node)
        if name is None or name in prune:
            continue
        path = f"{prefix}/{name}" if prefix else name
        yield path
        yield from walk_topics(node, path, prune)


class TopicTree:
    """Restartable, lazy view of the topic paths in a topic-set document.

    Each iteration walks the document again, so the same tree can be
    consumed any number of times.
    """

    def __init__(self, nodes: Iterable[Any], prune: Collection[str] = ()):
        self._nodes = tuple(nodes)
        self._prune = frozenset(prune)

    @classmethod
    def from_event_properties(
        cls, response: Any, prune: Collection[str] = ()
    ) -> "TopicTree":
        """Build a tree from a GetEventProperties response."""
        topic_set = get_field(response, "TopicSet")
        if topic_set is None:
            return cls((), prune)
        if etree.iselement(topic_set):
            return cls(list(topic_set), prune)
        nodes = get_field(topic_set, "_value_1") or []
        if etree.iselement(nodes):
            nodes = [nodes]
        return cls(nodes, prune)

    def __iter__(self) -> Iterator[str]:
        return walk_topics(self._nodes, prune=self._prune)

    def __contains__(self, topic: object) -> bool:
        if not isinstance(topic, str):
            return False
        wanted = _split(topic)
        return any(_split(path) == wanted for path in self)


def _split(path: str) -> list[str]:
    """Split a topic path into segments without namespace prefixes."""
    return [segment.split(":", 1)[-1] for segment in path.strip().split("/") if segment]


def _segments_equal(topic: list[str], pattern: list[str]) -> bool:
    return len(topic) == len(pattern) and all(
        p == "*" or p == t for t, p in zip(topic, pattern)
    )


def topic_matches(topic: str, expression: str) -> bool:
    """Check a topic path against a ConcreteSet-style topic expression.

    Supports ``|`` alternatives, ``*`` as a single-segment wildcard,
    ``//.`` (the node and all its descendants) and ``//*`` (descendants
    only). Namespace prefixes are ignored on both sides.
    """
    topic_segments = _split(topic)
    for alternative in expression.split("|"):
        alternative = alternative.strip()
        if not alternative:
            continue

        include_self, include_descendants = True, False
        if alternative.endswith("//."):
            alternative, include_descendants = alternative[:-3], True
        elif alternative.endswith("//*"):
            alternative, include_self, include_descendants = alternative[:-3], False, True

        pattern = _split(alternative)
        if include_self and _segments_equal(topic_segments, pattern):
            return True
        if (
            include_descendants
            and len(topic_segments) > len(pattern)
            and _segments_equal(topic_segments[: len(pattern)], pattern)
        ):
            return True
    return False


@dataclass(frozen=True)
class TopicFilter:
    """Topic expressions a subscription should receive.

    Expressions keep their order; duplicates are dropped. Without an explicit
    dialect the configured ``topic_dialect`` is used.
    """

    expressions: tuple[str, ...]
    dialect: Optional[str] = None

    def __post_init__(self) -> None:
        unique = tuple(dict.fromkeys(e.strip() for e in self.expressions if e.strip()))
        object.__setattr__(self, "expressions", unique)
        if not self.dialect:
            object.__setattr__(self, "dialect", get_settings().topic_dialect)

    @classmethod
    def of(cls, *expressions: str, dialect: Optional[str] = None) -> "TopicFilter":
        return cls(tuple(expressions), dialect)

    @property
    def expression(self) -> str:
        """All expressions as a single ``|``-joined expression."""
        return "|".join(self.expressions)

    def matches(self, topic: str) -> bool:
        return any(topic_matches(topic, e) for e in self.expressions)

    def to_element(self) -> etree._Element:
        """Render as a ``wsnt:TopicExpression`` element for a subscription Filter."""
        if not self.expressions:
            raise ValueError("TopicFilter has no expressions")
        element = etree.Element(
            f"{{{WSNT_NS}}}TopicExpression",
            nsmap={"wsnt": WSNT_NS, "tns1": ONVIF_TOPIC_NS},
        )
        element.set("Dialect", self.dialect)
        element.text = self.expression
        return element
