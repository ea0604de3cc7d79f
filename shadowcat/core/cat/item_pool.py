"""
Item pool and test blueprint data model.

Items and passages are immutable once the pool is built. Per-stage runtime
values (administered flags, information) are kept in arrays owned by a single
engine call rather than on the items themselves, so a pool can be shared by
any number of concurrently running examinees.
"""
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from shadowcat.core.cat.errors import CATConfigurationError

logger = logging.getLogger(__name__)

# Passage affiliation value used by tabular item data for discrete items
NO_PASSAGE = "none"


@dataclass(frozen=True)
class Item:
    """A calibrated 3PL item."""

    item_id: str
    a: float  # discrimination
    b: float  # difficulty
    c: float = 0.0  # guessing
    d: float = 1.0  # scaling constant
    se_a: float = 0.0
    se_b: float = 0.0
    se_c: float = 0.0
    passage_id: Optional[str] = None
    order_index: Optional[int] = None  # position within the passage
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.passage_id is not None and self.passage_id.lower() == NO_PASSAGE:
            object.__setattr__(self, "passage_id", None)

    @property
    def is_discrete(self) -> bool:
        return self.passage_id is None


@dataclass(frozen=True)
class Passage:
    """A shared stimulus with its ordered affiliated items."""

    passage_id: str
    item_ids: Tuple[str, ...] = ()
    attributes: Mapping[str, Any] = field(default_factory=dict)


class ItemPool:
    """
    Immutable collection of items and passages with row-index lookup.

    Row indices are the positions of items (and passages) in the order they
    were supplied; the solver contract reports selections by these rows.

    Passages not supplied explicitly are derived from the items' passage
    affiliations, in order of first appearance.
    """

    def __init__(
        self,
        items: Sequence[Item],
        passages: Optional[Sequence[Passage]] = None,
    ):
        if not items:
            raise CATConfigurationError("Item pool must contain at least one item")

        self._items: Tuple[Item, ...] = tuple(items)
        self._item_index: Dict[str, int] = {}
        for row, item in enumerate(self._items):
            if item.item_id in self._item_index:
                raise CATConfigurationError(
                    f"Duplicate item id in pool: {item.item_id}"
                )
            self._item_index[item.item_id] = row

        if passages is None:
            passages = self._derive_passages()
        self._passages: Tuple[Passage, ...] = tuple(passages)
        self._passage_index: Dict[str, int] = {
            p.passage_id: row for row, p in enumerate(self._passages)
        }

        for item in self._items:
            if item.passage_id is not None and item.passage_id not in self._passage_index:
                raise CATConfigurationError(
                    f"Item {item.item_id} references unknown passage {item.passage_id}"
                )

        logger.debug(
            f"Built item pool: {len(self._items)} items, "
            f"{len(self._passages)} passages"
        )

    def _derive_passages(self) -> List[Passage]:
        members: Dict[str, List[str]] = {}
        for item in self._items:
            if item.passage_id is not None:
                members.setdefault(item.passage_id, []).append(item.item_id)
        return [Passage(passage_id=pid, item_ids=tuple(ids)) for pid, ids in members.items()]

    @property
    def items(self) -> Tuple[Item, ...]:
        return self._items

    @property
    def passages(self) -> Tuple[Passage, ...]:
        return self._passages

    @property
    def item_ids(self) -> List[str]:
        return [item.item_id for item in self._items]

    @property
    def passage_ids(self) -> List[str]:
        return [p.passage_id for p in self._passages]

    @property
    def has_passages(self) -> bool:
        return bool(self._passages)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._item_index

    def item(self, item_id: str) -> Item:
        return self._items[self.item_row(item_id)]

    def item_row(self, item_id: str) -> int:
        try:
            return self._item_index[item_id]
        except KeyError:
            raise CATConfigurationError(f"Unknown item id: {item_id}") from None

    def passage_row(self, passage_id: str) -> int:
        try:
            return self._passage_index[passage_id]
        except KeyError:
            raise CATConfigurationError(f"Unknown passage id: {passage_id}") from None


class ConstraintType(str, enum.Enum):
    """Content constraint kinds understood by the reference solver."""

    INCLUDE = "include"  # every listed item is selected
    EXCLUDE = "exclude"  # no listed item is selected
    ALL_OR_NONE = "all_or_none"  # listed items are selected together or not at all
    ENEMY = "enemy"  # at most one listed item is selected
    COUNT = "count"  # number of matching items within [lower, upper]
    SUM = "sum"  # sum of a numeric attribute over matching items within [lower, upper]


@dataclass(frozen=True)
class ContentConstraint:
    """
    A hard content constraint on the shadow test.

    Items are matched by ``item_ids`` when given, otherwise by
    ``attribute`` taking one of ``attribute_values``, otherwise all items
    match. ``SUM`` constraints add up ``sum_attribute`` over the matches.
    """

    constraint_id: str
    constraint_type: ConstraintType
    item_ids: Tuple[str, ...] = ()
    attribute: Optional[str] = None
    attribute_values: Tuple[Any, ...] = ()
    sum_attribute: Optional[str] = None
    lower: Optional[float] = None
    upper: Optional[float] = None

    def matching_rows(self, pool: ItemPool) -> List[int]:
        """Return pool rows of the items this constraint applies to."""
        if self.item_ids:
            return [pool.item_row(item_id) for item_id in self.item_ids]
        if self.attribute is not None:
            return [
                row
                for row, item in enumerate(pool.items)
                if item.attributes.get(self.attribute) in self.attribute_values
            ]
        return list(range(len(pool)))


@dataclass(frozen=True)
class Blueprint:
    """Test definition: pool, length and structural/content constraints."""

    pool: ItemPool
    test_length: int
    passage_count_bounds: Optional[Tuple[int, int]] = None
    items_per_passage_bounds: Optional[Tuple[int, int]] = None
    constraints: Tuple[ContentConstraint, ...] = ()
    # Configured administration order of passages, by passage id
    passage_order: Optional[Tuple[str, ...]] = None

    def __post_init__(self) -> None:
        if self.test_length <= 0:
            raise CATConfigurationError(
                f"test_length must be positive, got {self.test_length}"
            )
        for name in ("passage_count_bounds", "items_per_passage_bounds"):
            bounds = getattr(self, name)
            if bounds is not None and not 0 <= bounds[0] <= bounds[1]:
                raise CATConfigurationError(f"{name} must satisfy 0 <= lower <= upper")
        if self.passage_order is not None:
            for passage_id in self.passage_order:
                self.pool.passage_row(passage_id)
