"""
Pytest configuration and shared fixtures for testing.
"""
from typing import List

import numpy as np
import pytest

from shadowcat.core.cat.ability_estimation import EAPConfig, NormalPrior
from shadowcat.core.cat.engine import CATConfig
from shadowcat.core.cat.exposure_control import (
    ExposureControlConfig,
    ExposureControlType,
    ThetaRange,
)
from shadowcat.core.cat.item_pool import (
    Blueprint,
    ConstraintType,
    ContentConstraint,
    Item,
    ItemPool,
)
from shadowcat.core.cat.item_selection import ItemSelectionMethod

ANCHOR_ITEM = "1007513"
LINKED_ITEMS = ("1007513", "1011601", "1094733")

# (id, a, b, c) for a small discrete pool
DISCRETE_POOL_PARAMS = [
    ("1007513", 1.12, -0.45, 0.18),
    ("1011601", 0.86, 0.30, 0.21),
    ("1094733", 1.35, 0.95, 0.15),
    ("1002284", 0.74, -1.60, 0.24),
    ("1003590", 1.48, 0.10, 0.12),
    ("1005127", 0.95, 1.70, 0.20),
    ("1006342", 1.21, -0.95, 0.17),
    ("1008875", 0.68, 0.55, 0.25),
    ("1009916", 1.05, -0.10, 0.19),
    ("1010448", 1.62, 1.25, 0.14),
]


def make_discrete_items() -> List[Item]:
    return [
        Item(item_id=item_id, a=a, b=b, c=c, d=1.0)
        for item_id, a, b, c in DISCRETE_POOL_PARAMS
    ]


def make_passage_items() -> List[Item]:
    """Two three-item passages with order indices plus four discrete items."""
    items = []
    for passage_id, b_shift in (("P1", -0.5), ("P2", 0.5)):
        for order in range(3):
            items.append(
                Item(
                    item_id=f"{passage_id}-{order + 1}",
                    a=1.0 + 0.1 * order,
                    b=b_shift + 0.2 * order,
                    c=0.2,
                    passage_id=passage_id,
                    order_index=order + 1,
                )
            )
    for i, b in enumerate((-1.0, -0.2, 0.4, 1.2), start=1):
        items.append(Item(item_id=f"D{i}", a=0.9 + 0.1 * i, b=b, c=0.2))
    return items


def content_constraints() -> tuple:
    return (
        ContentConstraint(
            constraint_id="anchor",
            constraint_type=ConstraintType.INCLUDE,
            item_ids=(ANCHOR_ITEM,),
        ),
        ContentConstraint(
            constraint_id="linked-set",
            constraint_type=ConstraintType.ALL_OR_NONE,
            item_ids=LINKED_ITEMS,
        ),
    )


@pytest.fixture
def discrete_pool() -> ItemPool:
    return ItemPool(make_discrete_items())


@pytest.fixture
def passage_pool() -> ItemPool:
    return ItemPool(make_passage_items())


@pytest.fixture
def discrete_blueprint(discrete_pool: ItemPool) -> Blueprint:
    """Test length 8 with an anchor item and an all-or-none linked set."""
    return Blueprint(
        pool=discrete_pool, test_length=8, constraints=content_constraints()
    )


@pytest.fixture
def eap_config() -> EAPConfig:
    return EAPConfig(num_quad=6, min_quad=-2.0, max_quad=2.0, prior=NormalPrior())


@pytest.fixture
def cat_config(eap_config: EAPConfig) -> CATConfig:
    """MFI selection, L = 3, no exposure control."""
    return CATConfig(
        initial_theta=0.0,
        eap=eap_config,
        item_selection_method=ItemSelectionMethod.MAX_FISHER_INFORMATION,
        l_value=3,
    )


@pytest.fixture
def item_exposure_config() -> ExposureControlConfig:
    return ExposureControlConfig(
        exposure_type=ExposureControlType.ITEM,
        theta_ranges=(ThetaRange(minimum=-8.0, maximum=8.0),),
        overall_range=ThetaRange(minimum=-8.0, maximum=8.0),
        r_max=1.0,
    )


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(42)
