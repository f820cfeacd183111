import random
from dataclasses import dataclass

from app.text import fold_reference


@dataclass(frozen=True)
class FoodItem:
    name: str
    description: str
    category: str
    region: str


DEFAULT_FOODS = (
    FoodItem("Phở bò", "Nước dùng xương bò ninh lâu, bánh phở mềm", "noodle", "Bắc"),
    FoodItem("Bún chả", "Chả nướng than hoa ăn với bún và nước mắm chua ngọt", "noodle", "Bắc"),
    FoodItem("Bánh cuốn", "Bánh mỏng nhân thịt mộc nhĩ, chấm nước mắm", "snack", "Bắc"),
    FoodItem("Bún bò Huế", "Sợi bún to, nước dùng sả ớt đậm vị", "noodle", "Trung"),
    FoodItem("Mì Quảng", "Mì sợi vàng, ít nước, thêm bánh tráng nướng", "noodle", "Trung"),
    FoodItem("Bánh xèo", "Bánh giòn nhân tôm thịt giá, cuốn rau sống", "snack", "Nam"),
    FoodItem("Cơm tấm", "Sườn nướng, bì, chả trứng trên cơm tấm", "rice", "Nam"),
    FoodItem("Hủ tiếu Nam Vang", "Nước dùng ngọt thanh, tôm, thịt, gan", "noodle", "Nam"),
    FoodItem("Bánh mì", "Bánh mì giòn kẹp pate, chả lụa, đồ chua", "snack", "Nam"),
    FoodItem("Lẩu thái", "Lẩu chua cay hải sản cho cả nhóm", "hotpot", "Nam"),
)


class FoodCatalog:
    """Read-only food catalog injected into the bot."""

    def __init__(self, items: tuple[FoodItem, ...] = DEFAULT_FOODS, rng: random.Random | None = None):
        self.items = items
        self.rng = rng or random.Random()

    def filter(self, query: str | None = None) -> list[FoodItem]:
        if not query:
            return list(self.items)
        wanted = fold_reference(query)
        return [
            item
            for item in self.items
            if wanted in (fold_reference(item.region), fold_reference(item.category))
            or wanted in fold_reference(item.name)
        ]

    def suggest(self, query: str | None = None) -> FoodItem | None:
        matches = self.filter(query)
        if not matches:
            return None
        return self.rng.choice(matches)
