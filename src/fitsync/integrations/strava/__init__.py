from fitsync.integrations.strava.adapter import StravaAdapter
from fitsync.integrations.strava.mappers import map_activity, map_profile
from fitsync.integrations.strava.webhook import StravaWebhook

__all__ = [
    "StravaAdapter",
    "StravaWebhook",
    "map_activity",
    "map_profile",
]
