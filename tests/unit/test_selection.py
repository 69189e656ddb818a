import random
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from tunisafka.core.errors import EmptyInputError, NoAvailableMenusError
from tunisafka.schemas import Menu, MenuItem, WeightRules
from tunisafka.services.selection import SelectionService

# Wednesday 12:00 in Helsinki
NOON = datetime(2025, 10, 29, 10, 0, tzinfo=timezone.utc)


def make_menu(menu_id, items=1, dietary=(), window=None):
    return Menu(
        id=menu_id,
        title=menu_id.title(),
        items=[MenuItem(name=f"{menu_id} dish {n}", dietary=list(dietary)) for n in range(items)],
        availability=window,
    )


@pytest.fixture
def menus():
    return [make_menu("hertsi"), make_menu("newton"), make_menu("reaktori"), make_menu("konehuone")]


class TestSelectRandom:
    """Uniform selection"""

    def test_empty_input(self):
        with pytest.raises(EmptyInputError):
            SelectionService().select_random([])

    def test_returns_flagged_copy(self, menus):
        """The selected menu is a copy flagged as selected, inputs stay untouched"""
        result = SelectionService().select_random(menus)

        assert result.selected_menu.is_selected is True
        assert result.total_menus_available == 4
        assert all(menu.is_selected is False for menu in menus)
        assert result.selected_menu.id in {menu.id for menu in menus}

    def test_distribution_is_roughly_uniform(self, menus):
        """1000 draws over 5 menus land within 40% of the expected 200 each"""
        menus = menus + [make_menu("newton-cafe")]
        service = SelectionService()
        counts = {menu.id: 0 for menu in menus}
        for _ in range(1000):
            counts[service.select_random(menus).selected_menu.id] += 1

        for count in counts.values():
            assert 120 <= count <= 280

    def test_history_is_bounded(self, menus):
        service = SelectionService(max_history_size=3)
        for _ in range(10):
            service.select_random(menus)

        assert len(service.history) == 3
        assert service.last_selection.selected_menu.id == service.history[-1]

    def test_falls_back_to_random_when_secrets_unavailable(self, menus):
        """No entropy source degrades to the random module instead of failing"""
        with patch("tunisafka.services.selection.secrets.randbelow", side_effect=NotImplementedError):
            result = SelectionService().select_random(menus)

        assert result.selected_menu.id in {menu.id for menu in menus}

    def test_max_history_size_setter_keeps_newest(self, menus):
        service = SelectionService(max_history_size=5, rng=random.Random(7))
        for _ in range(5):
            service.select_random(menus)
        newest = service.history[-2:]

        service.max_history_size = 2

        assert service.history == newest
        with pytest.raises(ValueError):
            service.max_history_size = 0

    def test_clear_history(self, menus):
        service = SelectionService()
        service.select_random(menus)

        service.clear_history()

        assert service.history == []
        assert service.last_selection is None


class TestAvoidingRecent:
    """Anti-repeat selection"""

    def test_recent_menus_are_skipped(self, menus):
        service = SelectionService()
        for _ in range(50):
            before = service.history[-2:]
            result = service.select_random_avoiding_recent(menus, avoid_count=2)
            assert result.selected_menu.id not in before

    def test_two_menus_alternate(self):
        """With two menus and avoid_count=1 selections strictly alternate"""
        pair = [make_menu("a"), make_menu("b")]
        service = SelectionService()
        picks = [service.select_random_avoiding_recent(pair, avoid_count=1).selected_menu.id for _ in range(10)]

        assert all(first != second for first, second in zip(picks, picks[1:]))

    def test_avoid_count_covering_everything_uses_full_list(self, menus):
        """Never fails just because everything was recently selected"""
        service = SelectionService()
        for _ in range(5):
            result = service.select_random_avoiding_recent(menus, avoid_count=10)
            assert result.selected_menu.id in {menu.id for menu in menus}

    def test_single_menu_is_always_selectable(self):
        only = [make_menu("only")]
        service = SelectionService()
        service.select_random(only)

        assert service.select_random_avoiding_recent(only, avoid_count=1).selected_menu.id == "only"


class TestFilteredSelection:
    """Availability and dietary filters"""

    def test_available_only(self):
        open_menu = make_menu("open", window={"startTime": "10:30", "endTime": "14:00", "days": []})
        closed_menu = make_menu("closed", window={"startTime": "15:00", "endTime": "18:00", "days": []})
        service = SelectionService()

        for _ in range(20):
            result = service.select_random_available([open_menu, closed_menu], now=NOON)
            assert result.selected_menu.id == "open"
            assert result.available_after_filtering == 1

    def test_nothing_available(self):
        closed_menu = make_menu("closed", window={"startTime": "15:00", "endTime": "18:00", "days": []})

        with pytest.raises(NoAvailableMenusError):
            SelectionService().select_random_available([closed_menu], now=NOON)

    def test_available_empty_input_is_distinct_error(self):
        with pytest.raises(EmptyInputError):
            SelectionService().select_random_available([], now=NOON)

    def test_by_dietary(self):
        vegan = make_menu("green", dietary=["vegan"])
        meat = make_menu("grill", dietary=["lactose-free"])
        service = SelectionService()

        assert service.select_random_by_dietary([vegan, meat], "vegan").selected_menu.id == "green"
        with pytest.raises(NoAvailableMenusError):
            service.select_random_by_dietary([meat], "vegan")


class TestWeightedSelection:
    """Weighted sampling"""

    def test_weight_floor(self):
        service = SelectionService()
        rules = WeightRules(base_weight=-5)

        assert service.menu_weight(make_menu("a"), rules, NOON) == pytest.approx(0.1)

    def test_weights_include_bonuses(self):
        service = SelectionService()
        menu = make_menu("a", items=3, dietary=["vegan", "gluten-free"])
        rules = WeightRules(base_weight=1, item_count_bonus=0.5, dietary_bonus=1, availability_bonus=2)

        # No window means available: 1 + 1.5 + 2 + 2
        assert service.menu_weight(menu, rules, NOON) == pytest.approx(6.5)

    def test_heavier_menu_wins_more_often(self):
        light = make_menu("light", items=1)
        heavy = make_menu("heavy", items=9)
        rules = WeightRules(base_weight=0, item_count_bonus=1)
        service = SelectionService(rng=random.Random(1234))

        picks = [service.select_weighted([light, heavy], rules).selected_menu.id for _ in range(1000)]

        assert picks.count("heavy") > 3 * picks.count("light")

    def test_top_of_range_falls_to_last_menu(self):
        """A draw at the very top of the range resolves to the last candidate"""
        menus = [make_menu("a"), make_menu("b"), make_menu("c")]
        service = SelectionService()

        with patch.object(service, "_random_unit", return_value=1.0):
            result = service.select_weighted(menus)

        assert result.selected_menu.id == "c"
        assert result.selection_weight == pytest.approx(1.0)

    def test_bottom_of_range_picks_first_menu(self):
        menus = [make_menu("a"), make_menu("b")]
        service = SelectionService()

        with patch.object(service, "_random_unit", return_value=0.0):
            assert service.select_weighted(menus).selected_menu.id == "a"


class TestItemAndMultipleSelection:
    """Single item mode and multiple selections"""

    def test_random_item(self):
        menus = [make_menu("a", items=2), make_menu("b", items=0), make_menu("c", items=1)]
        service = SelectionService()

        result = service.select_random_item(menus)

        assert result.total_items_available == 3
        assert result.menu_id in ("a", "c")
        assert result.selected_item.name.startswith(result.menu_id)
        assert service.history == []

    def test_random_item_without_items(self):
        with pytest.raises(NoAvailableMenusError):
            SelectionService().select_random_item([make_menu("a", items=0)])

    def test_unique_multiple_selections(self, menus):
        results = SelectionService().create_multiple_selections(menus, count=3)

        ids = [result.selected_menu.id for result in results]
        assert len(ids) == 3
        assert len(set(ids)) == 3

    def test_multiple_selections_capped_by_menu_count(self, menus):
        results = SelectionService().create_multiple_selections(menus, count=10)
        assert len(results) == 4

    def test_non_unique_multiple_selections(self, menus):
        results = SelectionService().create_multiple_selections(menus, count=6, unique=False)
        assert len(results) == 6


class TestStatisticsHelpers:
    """Histogram and randomness helpers leave the real history alone"""

    def test_histogram_restores_history(self, menus):
        service = SelectionService()
        service.select_random(menus)
        history_before = service.history
        last_before = service.last_selection

        histogram = service.selection_histogram(menus, draws=200)

        assert sum(histogram.values()) == 200
        assert set(histogram) == {menu.id for menu in menus}
        assert service.history == history_before
        assert service.last_selection is last_before

    def test_randomness_distribution(self, menus):
        service = SelectionService()

        report = service.test_randomness_distribution(menus, iterations=1000, tolerance=0.4)

        assert report["iterations"] == 1000
        assert report["menuCount"] == 4
        assert report["expectedPerMenu"] == 250
        assert report["isUniform"] is True
        assert sum(entry["count"] for entry in report["distribution"].values()) == 1000
        assert service.history == []

    def test_selection_statistics(self, menus):
        service = SelectionService()
        for menu in (menus[0], menus[0], menus[1]):
            service.select_random([menu])

        stats = service.selection_statistics()

        assert stats["historySize"] == 3
        assert stats["counts"] == {"hertsi": 2, "newton": 1}
        assert stats["mostSelected"] == "hertsi"
        assert stats["lastSelection"] == "newton"
