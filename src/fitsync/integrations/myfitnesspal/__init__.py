from fitsync.integrations.myfitnesspal.adapter import MyFitnessPalAdapter
from fitsync.integrations.myfitnesspal.mappers import map_exercise, map_profile
from fitsync.integrations.myfitnesspal.webhook import MyFitnessPalWebhook

__all__ = [
    "MyFitnessPalAdapter",
    "MyFitnessPalWebhook",
    "map_exercise",
    "map_profile",
]
