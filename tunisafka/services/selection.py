import random
import secrets
from collections import Counter, deque
from datetime import datetime
from typing import Any, Optional, Sequence

from tunisafka.core.config import settings
from tunisafka.core.errors import EmptyInputError, NoAvailableMenusError
from tunisafka.fetch.utils import now_in
from tunisafka.schemas import ItemSelectionResult, Menu, SelectionResult, WeightRules

MIN_WEIGHT = 0.1


class SelectionService:
    """
    Random menu selection with a bounded history of selected menu ids.

    Every selection returns a copy of the chosen menu flagged `is_selected`;
    the menus passed in are never modified.
    """

    def __init__(self, max_history_size: Optional[int] = None, rng: Optional[random.Random] = None,
                 timezone: Optional[str] = None):
        size = settings.SELECTION_HISTORY_SIZE if max_history_size is None else max_history_size
        if size < 1:
            raise ValueError("max_history_size must be at least 1")
        self._history: deque[str] = deque(maxlen=size)
        # Injected generator for reproducible tests; None means secrets
        self._rng = rng
        self.timezone = timezone or settings.CACHE_TIMEZONE
        self.last_selection: Optional[SelectionResult] = None

    @property
    def history(self) -> list[str]:
        return list(self._history)

    @property
    def max_history_size(self) -> int:
        return self._history.maxlen

    @max_history_size.setter
    def max_history_size(self, size: int) -> None:
        if size < 1:
            raise ValueError("max_history_size must be at least 1")
        # Keeps the newest entries
        self._history = deque(self._history, maxlen=size)

    def clear_history(self) -> None:
        self._history.clear()
        self.last_selection = None

    def _random_index(self, length: int) -> int:
        if self._rng is not None:
            return self._rng.randrange(length)
        try:
            return secrets.randbelow(length)
        except (NotImplementedError, OSError):
            return random.randrange(length)

    def _random_unit(self) -> float:
        if self._rng is not None:
            return self._rng.random()
        try:
            return secrets.SystemRandom().random()
        except (NotImplementedError, OSError):
            return random.random()

    def _record(self, menu: Menu, total: int, available_after_filtering: Optional[int] = None,
                weight: Optional[float] = None) -> SelectionResult:
        result = SelectionResult(
            selected_menu=menu.selected_copy(),
            total_menus_available=total,
            available_after_filtering=available_after_filtering,
            selection_weight=weight,
        )
        self._history.append(menu.id)
        self.last_selection = result
        return result

    def select_random(self, menus: Sequence[Menu]) -> SelectionResult:
        """Uniformly random menu; EmptyInputError on an empty list"""
        if not menus:
            raise EmptyInputError("No menus available for selection")
        menu = menus[self._random_index(len(menus))]
        return self._record(menu, total=len(menus))

    def select_random_avoiding_recent(self, menus: Sequence[Menu], avoid_count: int = 2) -> SelectionResult:
        """
        Skip menus among the last `avoid_count` selections.
        Falls back to the full list when nothing would be left to pick from.
        """
        if not menus:
            raise EmptyInputError("No menus available for selection")
        if avoid_count <= 0 or avoid_count >= len(menus):
            return self.select_random(menus)

        recent = set(list(self._history)[-avoid_count:])
        candidates = [menu for menu in menus if menu.id not in recent]
        if not candidates:
            return self.select_random(menus)
        menu = candidates[self._random_index(len(candidates))]
        return self._record(menu, total=len(menus), available_after_filtering=len(candidates))

    def select_random_available(self, menus: Sequence[Menu], now: Optional[datetime] = None) -> SelectionResult:
        if not menus:
            raise EmptyInputError("No menus available for selection")
        moment = now_in(self.timezone, now)
        available = [menu for menu in menus if menu.is_currently_available(moment)]
        if not available:
            raise NoAvailableMenusError("No menus are currently available")
        menu = available[self._random_index(len(available))]
        return self._record(menu, total=len(menus), available_after_filtering=len(available))

    def select_random_by_dietary(self, menus: Sequence[Menu], dietary: str) -> SelectionResult:
        if not menus:
            raise EmptyInputError("No menus available for selection")
        matching = [menu for menu in menus if menu.has_dietary(dietary)]
        if not matching:
            raise NoAvailableMenusError(f"No menus match the dietary filter '{dietary}'")
        menu = matching[self._random_index(len(matching))]
        return self._record(menu, total=len(menus), available_after_filtering=len(matching))

    def menu_weight(self, menu: Menu, rules: WeightRules, now: Optional[datetime] = None) -> float:
        weight = rules.base_weight
        weight += rules.item_count_bonus * menu.item_count
        weight += rules.dietary_bonus * len(menu.dietary_categories())
        if rules.availability_bonus and menu.is_currently_available(now_in(self.timezone, now)):
            weight += rules.availability_bonus
        return max(weight, MIN_WEIGHT)

    def select_weighted(self, menus: Sequence[Menu], rules: Optional[WeightRules] = None,
                        now: Optional[datetime] = None) -> SelectionResult:
        """
        Weighted random selection.

        Draws a uniform value over the total weight and walks the cumulative
        weights; rounding leftovers land on the last menu.
        """
        if not menus:
            raise EmptyInputError("No menus available for selection")
        rules = rules or WeightRules()
        weights = [self.menu_weight(menu, rules, now) for menu in menus]
        target = self._random_unit() * sum(weights)

        cumulative = 0.0
        for menu, weight in zip(menus, weights):
            cumulative += weight
            if target < cumulative:
                return self._record(menu, total=len(menus), weight=weight)
        return self._record(menus[-1], total=len(menus), weight=weights[-1])

    def select_random_item(self, menus: Sequence[Menu]) -> ItemSelectionResult:
        """One item drawn uniformly across all menus; does not touch the history"""
        if not menus:
            raise EmptyInputError("No menus available for selection")
        pairs = [(menu, item) for menu in menus for item in menu.items]
        if not pairs:
            raise NoAvailableMenusError("No menu items available for selection")
        menu, item = pairs[self._random_index(len(pairs))]
        return ItemSelectionResult(
            selected_item=item.model_copy(deep=True),
            menu_id=menu.id,
            menu_title=menu.title,
            total_items_available=len(pairs),
        )

    def create_multiple_selections(self, menus: Sequence[Menu], count: int = 3,
                                   unique: bool = True) -> list[SelectionResult]:
        if not menus:
            raise EmptyInputError("No menus available for selection")
        if count < 1:
            raise ValueError("count must be at least 1")
        if not unique:
            return [self.select_random(menus) for _ in range(count)]

        pool = list(menus)
        results = []
        for _ in range(min(count, len(pool))):
            menu = pool.pop(self._random_index(len(pool)))
            results.append(self._record(menu, total=len(menus), available_after_filtering=len(pool) + 1))
        return results

    def selection_statistics(self) -> dict[str, Any]:
        counts = Counter(self._history)
        most_common = counts.most_common(1)
        return {
            "historySize": len(self._history),
            "maxHistorySize": self.max_history_size,
            "history": self.history,
            "counts": dict(counts),
            "mostSelected": most_common[0][0] if most_common else None,
            "lastSelection": self.last_selection.selected_menu.id if self.last_selection else None,
        }

    def selection_histogram(self, menus: Sequence[Menu], draws: int = 1000) -> dict[str, int]:
        """Selection counts per menu id over `draws` draws; the real history is left as it was"""
        if not menus:
            raise EmptyInputError("No menus available for selection")
        saved_history = list(self._history)
        saved_last = self.last_selection
        counts = {menu.id: 0 for menu in menus}
        try:
            for _ in range(draws):
                result = self.select_random(menus)
                counts[result.selected_menu.id] += 1
        finally:
            self._history = deque(saved_history, maxlen=self._history.maxlen)
            self.last_selection = saved_last
        return counts

    def test_randomness_distribution(self, menus: Sequence[Menu], iterations: int = 100,
                                     tolerance: float = 0.4) -> dict[str, Any]:
        """
        Draw `iterations` times and compare every menu's count with the
        uniform expectation. `isUniform` holds when no menu deviates by more
        than `tolerance` (relative to the expected count).
        """
        histogram = self.selection_histogram(menus, iterations)
        expected = iterations / len(histogram)
        distribution = {}
        for menu_id, count in histogram.items():
            distribution[menu_id] = {
                "count": count,
                "percentage": round(count / iterations * 100, 2),
                "deviation": round(abs(count - expected) / expected, 4),
            }
        max_deviation = max(entry["deviation"] for entry in distribution.values())
        chi_square = sum((count - expected) ** 2 / expected for count in histogram.values())
        return {
            "iterations": iterations,
            "menuCount": len(histogram),
            "expectedPerMenu": round(expected, 2),
            "distribution": distribution,
            "maxDeviation": max_deviation,
            "chiSquare": round(chi_square, 4),
            "tolerance": tolerance,
            "isUniform": max_deviation <= tolerance,
        }
