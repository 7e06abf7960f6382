"""Seed data: supported OTA platforms and the Riyadh neighborhoods tracked."""

from .models.market import BoundingBox

# (slug, name, base_url, scrape_config overrides)
PLATFORMS: list[tuple[str, str, str, dict]] = [
    ("airbnb", "Airbnb", "https://www.airbnb.com", {"max_concurrent": 2, "delay_seconds": 3.0}),
    ("booking", "Booking.com", "https://www.booking.com", {"max_concurrent": 2, "delay_seconds": 4.0}),
    ("agoda", "Agoda", "https://www.agoda.com", {"max_concurrent": 2, "delay_seconds": 4.0}),
    ("gathern", "Gathern", "https://gathern.co", {"max_concurrent": 2, "delay_seconds": 2.0}),
]

# slug -> (name, Arabic name, center latitude, center longitude, search box)
NEIGHBORHOODS: dict[str, tuple[str, str, float, float, BoundingBox]] = {
    "al-olaya": (
        "Al Olaya", "العليا", 24.6900, 46.6850,
        BoundingBox(ne_lat=24.7100, ne_lng=46.6950, sw_lat=24.6850, sw_lng=46.6700),
    ),
    "al-wizarat": (
        "Al Wizarat", "الوزارات", 24.6600, 46.7100,
        BoundingBox(ne_lat=24.6650, ne_lng=46.7150, sw_lat=24.6450, sw_lng=46.6950),
    ),
    "blvd-city": (
        "BLVD City", "بوليفارد سيتي", 24.7500, 46.6400,
        BoundingBox(ne_lat=24.7550, ne_lng=46.6450, sw_lat=24.7350, sw_lng=46.6200),
    ),
    "al-malqa": (
        "Al Malqa", "الملقا", 24.8100, 46.6300,
        BoundingBox(ne_lat=24.8100, ne_lng=46.6350, sw_lat=24.7850, sw_lng=46.6050),
    ),
    "al-nakheel": (
        "Al Nakheel", "النخيل", 24.7700, 46.6500,
        BoundingBox(ne_lat=24.7700, ne_lng=46.6550, sw_lat=24.7500, sw_lng=46.6300),
    ),
    "hittin": (
        "Hittin", "حطين", 24.7800, 46.6200,
        BoundingBox(ne_lat=24.7800, ne_lng=46.6200, sw_lat=24.7550, sw_lng=46.5900),
    ),
    "al-sulaimaniyah": (
        "Al Sulaimaniyah", "السليمانية", 24.7000, 46.7000,
        BoundingBox(ne_lat=24.7000, ne_lng=46.6800, sw_lat=24.6800, sw_lng=46.6550),
    ),
    "kafd": (
        "KAFD", "كافد", 24.7700, 46.6400,
        BoundingBox(ne_lat=24.7700, ne_lng=46.6750, sw_lat=24.7500, sw_lng=46.6500),
    ),
}
