import pytest

from delivery_core.errors import InvalidCatalog, StageOutOfRange
from delivery_core.rollout import Stage, StageCatalog
from delivery_core.types import Operator

from conftest import make_catalog


def test_valid_catalog_exposes_stages() -> None:
    catalog = make_catalog((10, 60, {"error_rate": ["<=", 0.01]}), (50, 60, None), (100, 120, None))
    catalog.validate()
    assert len(catalog) == 3
    assert catalog.stage_at(1).target_weight_percent == 50
    assert catalog.stage_at(0).thresholds[0].operator is Operator.LE
    assert not catalog.is_last_stage(1)
    assert catalog.is_last_stage(2)
    assert catalog.min_positive_soak_seconds() == 60


def test_stage_at_out_of_range() -> None:
    catalog = make_catalog((100, 0, None))
    with pytest.raises(StageOutOfRange):
        catalog.stage_at(1)
    with pytest.raises(IndexError):
        catalog.stage_at(-1)


def test_equal_consecutive_weights_and_empty_thresholds_are_valid() -> None:
    catalog = make_catalog((25, 30, None), (25, 30, None), (100, 30, None))
    catalog.validate()
    assert [s.target_weight_percent for s in catalog] == [25, 25, 100]
    assert all(not s.thresholds for s in catalog)


@pytest.mark.parametrize(
    "stages, fragment",
    [
        ([(50, 10, None), (20, 10, None), (100, 10, None)], "decreases"),
        ([(10, 10, None), (90, 10, None)], "expected 100"),
        ([(10, 10, None), (101, 10, None)], "outside [0,100]"),
        ([(-5, 10, None), (100, 10, None)], "outside [0,100]"),
        ([(10, -1, None), (100, 10, None)], "negative"),
    ],
)
def test_invalid_catalogs_are_rejected(stages, fragment) -> None:
    catalog = make_catalog(*stages)
    with pytest.raises(InvalidCatalog) as excinfo:
        catalog.validate()
    assert any(fragment in problem for problem in excinfo.value.problems)


def test_empty_catalog_rejected() -> None:
    with pytest.raises(InvalidCatalog):
        StageCatalog([]).validate()


def test_out_of_order_indices_rejected() -> None:
    catalog = StageCatalog([Stage(index=1, target_weight_percent=50, min_soak_seconds=0), Stage(index=0, target_weight_percent=100, min_soak_seconds=0)])
    with pytest.raises(InvalidCatalog):
        catalog.validate()


def test_from_rows_rejects_unknown_operator() -> None:
    with pytest.raises(InvalidCatalog):
        StageCatalog.from_rows([{"target_weight_percent": 100, "thresholds": [{"metric": "x", "operator": "==", "limit": 1}]}])


def test_catalog_is_immutable_value() -> None:
    a = make_catalog((10, 60, {"error_rate": ["<=", 0.01]}), (100, 60, None))
    b = StageCatalog.from_rows(a.to_rows())
    assert a == b
    with pytest.raises(AttributeError):
        a.stages[0].target_weight_percent = 99  # type: ignore[misc]


@pytest.mark.parametrize("rule", [0.01, ["<="], None])
def test_malformed_shorthand_rule_is_invalid_catalog(rule) -> None:
    with pytest.raises(InvalidCatalog):
        StageCatalog.from_rows([{"target_weight_percent": 100, "thresholds": {"error_rate": rule}}])


@pytest.mark.parametrize(
    "soak, limit",
    [
        (float("nan"), 0.01),
        (float("inf"), 0.01),
        (60, float("nan")),
        (60, float("inf")),
    ],
)
def test_non_finite_values_rejected(soak, limit) -> None:
    catalog = make_catalog((100, soak, {"error_rate": ["<=", limit]}))
    with pytest.raises(InvalidCatalog) as excinfo:
        catalog.validate()
    assert any("not finite" in problem for problem in excinfo.value.problems)
