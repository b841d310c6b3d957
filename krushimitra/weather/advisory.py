"""
Farm advisory from current weather.

One category per payload, thresholds checked in priority order:
rain first (spraying, irrigation), then heat, frost, wind.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from krushimitra.core.types import AdvisoryCategory

ADVISORY_TEXT = {
    AdvisoryCategory.POSTPONE_SPRAYING:
        "High chance of rain. Postpone spraying activities. Good time for indoor planning.",
    AdvisoryCategory.IRRIGATION_PLANNING:
        "Moderate rain expected. Good time for irrigation planning and soil preparation.",
    AdvisoryCategory.HEAT_STRESS:
        "High temperature. Ensure adequate irrigation. Avoid midday fieldwork.",
    AdvisoryCategory.FROST_WATCH:
        "Cool weather. Monitor frost-sensitive crops. Good for harvesting.",
    AdvisoryCategory.WIND_HAZARD:
        "Windy conditions. Avoid pesticide application. Secure farm equipment.",
    AdvisoryCategory.FAVORABLE:
        "Favorable conditions for farming activities. Plan your fieldwork accordingly.",
    AdvisoryCategory.UNAVAILABLE:
        "Weather data temporarily unavailable. Using estimated conditions.",
}


@dataclass(frozen=True)
class AdvisoryPolicy:
    heavy_rain_probability: float = 70.0
    moderate_rain_probability: float = 40.0
    heat_temperature: float = 35.0
    frost_temperature: float = 15.0
    high_wind_speed: float = 20.0

    def classify(
        self,
        temperature: Optional[float],
        precipitation_probability: Optional[float],
        wind_speed: Optional[float],
    ) -> AdvisoryCategory:
        precipitation = precipitation_probability or 0
        temperature = temperature if temperature is not None else 25.0
        wind = wind_speed or 0

        if precipitation > self.heavy_rain_probability:
            return AdvisoryCategory.POSTPONE_SPRAYING
        if precipitation > self.moderate_rain_probability:
            return AdvisoryCategory.IRRIGATION_PLANNING
        if temperature > self.heat_temperature:
            return AdvisoryCategory.HEAT_STRESS
        if temperature < self.frost_temperature:
            return AdvisoryCategory.FROST_WATCH
        if wind > self.high_wind_speed:
            return AdvisoryCategory.WIND_HAZARD
        return AdvisoryCategory.FAVORABLE

    def annotate(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Return a copy of payload with advisory and advisory_category set."""
        category = self.classify(
            payload.get("temperature"),
            payload.get("precipitation_probability"),
            payload.get("wind_speed"),
        )
        annotated = dict(payload)
        annotated["advisory"] = ADVISORY_TEXT[category]
        annotated["advisory_category"] = category.value
        return annotated
