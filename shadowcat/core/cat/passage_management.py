"""
Passage handling around the shadow-test solve.

Passages are shared stimuli whose items must be administered contiguously
and, when order indices are configured, in non-decreasing internal order.
Two steps enforce this:

    - get_eligible_passage_items(): pre-solve hard eligibility. Items of
      passages that were started and then left, and items of the current
      passage that precede the last administered one, are ruled out.
    - prep_shadow_test(): post-solve ordering. The solver's unordered
      selection is turned into an administration sequence by repeatedly
      simulating "which item comes next" until the shadow test is used up.

The hard filter runs first; the ordering step assumes its output but
re-checks passage continuation on its own, since the solver may keep
administered passage items that the filter never touches.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np

from shadowcat.core.cat.item_pool import ItemPool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PassageInfo:
    """Mean information of a passage (or a discrete item) in the shadow test."""

    entity_id: str
    information: float
    is_passage: bool


def get_eligible_passage_items(
    administered_item_ids: Sequence[str], pool: ItemPool
) -> np.ndarray:
    """
    Hard eligibility of every pool item given the administration history.

    Args:
        administered_item_ids: Administered items, in administration order.
        pool: Item pool.

    Returns:
        Boolean array over pool rows; False marks items the solver must not select.
    """
    eligible = np.ones(len(pool), dtype=bool)
    if not pool.has_passages or not administered_item_ids:
        return eligible

    administered = set(administered_item_ids)

    def close_passage(passage_id: str) -> None:
        for row, item in enumerate(pool.items):
            if item.passage_id == passage_id and item.item_id not in administered:
                eligible[row] = False

    # Passages that were left before completion stay closed
    for previous_id, next_id in zip(administered_item_ids, administered_item_ids[1:]):
        previous_passage = pool.item(previous_id).passage_id
        if previous_passage is not None and previous_passage != pool.item(next_id).passage_id:
            close_passage(previous_passage)

    # Within the active passage, items before the last one are skipped
    last = pool.item(administered_item_ids[-1])
    if last.passage_id is not None and last.order_index is not None:
        for row, item in enumerate(pool.items):
            if (
                item.passage_id == last.passage_id
                and item.item_id not in administered
                and (item.order_index or 0) < last.order_index
            ):
                eligible[row] = False

    n_blocked = int((~eligible).sum())
    if n_blocked:
        logger.debug(f"Passage rules block {n_blocked} items")

    return eligible


def calc_passage_info(
    shadow_rows: Sequence[int], information: np.ndarray, pool: ItemPool
) -> List[PassageInfo]:
    """
    Mean information per passage over the shadow test.

    Discrete items are returned as their own entries. Entries appear in
    order of first occurrence in ``shadow_rows``.
    """
    passage_values: Dict[str, List[float]] = {}
    entries: List[PassageInfo] = []
    order: List[str] = []

    for row in shadow_rows:
        item = pool.items[row]
        if item.is_discrete:
            entries.append(
                PassageInfo(item.item_id, float(information[row]), is_passage=False)
            )
            order.append(item.item_id)
        else:
            if item.passage_id not in passage_values:
                passage_values[item.passage_id] = []
                order.append(item.passage_id)
            passage_values[item.passage_id].append(float(information[row]))

    by_id = {entry.entity_id: entry for entry in entries}
    for passage_id, values in passage_values.items():
        by_id[passage_id] = PassageInfo(
            passage_id, float(np.mean(values)), is_passage=True
        )

    return [by_id[entity_id] for entity_id in order]


def passage_index_sequence(
    administered_item_ids: Sequence[str], pool: ItemPool
) -> List[int]:
    """Passage rows of administered items, consecutive repeats collapsed."""
    sequence: List[int] = []
    for item_id in administered_item_ids:
        passage_id = pool.item(item_id).passage_id
        if passage_id is None:
            continue
        row = pool.passage_row(passage_id)
        if not sequence or sequence[-1] != row:
            sequence.append(row)
    return sequence


def _pick_within_passage(rows: List[int], pool: ItemPool) -> int:
    """
    Next item of a passage.

    ``rows`` is sorted by ascending information. The lowest order index wins
    when the passage has configured order; otherwise the most informative.
    """
    if pool.items[rows[0]].order_index is not None:
        return min(
            rows,
            key=lambda r: (
                pool.items[r].order_index
                if pool.items[r].order_index is not None
                else float("inf")
            ),
        )
    return rows[-1]


def _next_passage_in_sequence(
    administered_item_ids: Sequence[str],
    pool: ItemPool,
    passage_sequence: Sequence[int],
) -> Optional[str]:
    last_passage: Optional[str] = None
    for item_id in reversed(administered_item_ids):
        passage_id = pool.item(item_id).passage_id
        if passage_id is not None:
            last_passage = passage_id
            break

    if last_passage is None:
        return pool.passages[passage_sequence[0]].passage_id

    last_row = pool.passage_row(last_passage)
    if last_row not in passage_sequence:
        return None
    position = list(passage_sequence).index(last_row)
    if position + 1 >= len(passage_sequence):
        return None
    return pool.passages[passage_sequence[position + 1]].passage_id


def select_next_item(
    administered_item_ids: Sequence[str],
    shadow_rows: Sequence[int],
    information: np.ndarray,
    pool: ItemPool,
    passage_sequence: Optional[Sequence[int]] = None,
) -> Optional[int]:
    """
    Choose the row of the next shadow-test item to administer.

    Args:
        administered_item_ids: Items administered so far, in order.
        shadow_rows: Pool rows of the current shadow test.
        information: Per-row criterion values used for ranking.
        pool: Item pool.
        passage_sequence: Optional configured passage order (passage rows).

    Returns:
        Pool row of the next item, or None when every shadow-test item has
        been administered.
    """
    administered = set(administered_item_ids)
    remaining = [r for r in shadow_rows if pool.items[r].item_id not in administered]
    if not remaining:
        return None
    remaining.sort(key=lambda r: information[r])

    if not pool.has_passages or all(pool.items[r].is_discrete for r in remaining):
        return remaining[-1]

    def remaining_in(passage_id: str) -> List[int]:
        return [r for r in remaining if pool.items[r].passage_id == passage_id]

    # Continue the passage in progress
    if administered_item_ids:
        last_passage = pool.item(administered_item_ids[-1]).passage_id
        if last_passage is not None:
            in_passage = remaining_in(last_passage)
            if in_passage:
                return _pick_within_passage(in_passage, pool)

    candidates = calc_passage_info(shadow_rows, information, pool)
    if passage_sequence:
        next_passage = _next_passage_in_sequence(
            administered_item_ids, pool, passage_sequence
        )
        candidates = [
            c for c in candidates if not c.is_passage or c.entity_id == next_passage
        ]

    for candidate in sorted(candidates, key=lambda c: c.information, reverse=True):
        if candidate.is_passage:
            in_passage = remaining_in(candidate.entity_id)
            if in_passage:
                return _pick_within_passage(in_passage, pool)
        elif candidate.entity_id not in administered:
            return pool.item_row(candidate.entity_id)

    return remaining[-1]


def prep_shadow_test(
    administered_item_ids: Sequence[str],
    shadow_rows: Sequence[int],
    information: np.ndarray,
    pool: ItemPool,
    passage_sequence: Optional[Sequence[int]] = None,
) -> List[str]:
    """
    Order the not-yet-administered part of a shadow test.

    Repeatedly selects the next item as if it had been administered, until
    the whole shadow test is consumed. Deterministic for fixed inputs.

    Returns:
        Item ids of the shadow test that are not yet administered, in
        administration order (highest priority first).
    """
    working = list(administered_item_ids)
    ordered: List[str] = []

    while True:
        row = select_next_item(working, shadow_rows, information, pool, passage_sequence)
        if row is None:
            break
        item_id = pool.items[row].item_id
        ordered.append(item_id)
        working.append(item_id)

    return ordered
