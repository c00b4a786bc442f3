"""Seed script: populates the analysis store with demo records for one owner.

Generates synthetic leaf photos, runs them through the mock inference path
and the normalizer, and leaves the last one pending.  No ledger is touched:
correlation ids are taken from DEMO_IDS.
Run from the backend directory:
    python seed_demo.py
"""

from __future__ import annotations

import io
import logging

from PIL import Image

from cropadvisor.config import settings
from cropadvisor.db import AnalysisStore, db_path_from_url
from cropadvisor.errors import DuplicateId
from cropadvisor.models.gemini import GeminiVisionWrapper
from cropadvisor.services.fingerprint import fingerprint_image
from cropadvisor.services.normalizer import normalize_response

logger = logging.getLogger("seed_demo")

DEMO_OWNER = "0x" + "0" * 36 + "dead"
DEMO_IDS = ["1001", "1002", "1003", "1004"]

# Leaf colours from healthy green to blighted brown; one image per demo id.
DEMO_COLOURS = [(46, 139, 87), (154, 205, 50), (218, 165, 32), (101, 67, 33)]


def _demo_image(colour: tuple[int, int, int]) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (64, 64), colour).save(buf, format="PNG")
    return buf.getvalue()


def seed() -> None:
    store = AnalysisStore(db_path_from_url(settings.DATABASE_URL))
    store.init_db()
    inference = GeminiVisionWrapper(settings.GEMINI_MODEL, api_key="", mock=True)
    inference.load()

    for index, (correlation_id, colour) in enumerate(zip(DEMO_IDS, DEMO_COLOURS)):
        image_bytes = _demo_image(colour)
        try:
            store.create_pending(correlation_id, DEMO_OWNER, fingerprint_image(image_bytes))
        except DuplicateId:
            logger.info("Demo analysis %s already present, skipping.", correlation_id)
            continue
        if index == len(DEMO_IDS) - 1:
            logger.info("Leaving demo analysis %s pending.", correlation_id)
            continue
        normalized = normalize_response(inference.analyze(image_bytes, "image/png"))
        store.complete(correlation_id, normalized.result, fallback=normalized.fallback)

    records = list(store.iter_by_owner(DEMO_OWNER))
    logger.info("Seeded %d demo analyses for %s.", len(records), DEMO_OWNER)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    seed()
