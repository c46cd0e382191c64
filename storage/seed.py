"""Load a JSON content bundle into the content store.

A bundle is one JSON object with optional ``students``, ``problems`` and
``achievements`` arrays, each entry shaped like the matching model.
"""

import json
from pathlib import Path

from loguru import logger

from .base import ContentStore
from models import Achievement, Problem, Student


def load_content_bundle(store: ContentStore, json_path: Path) -> dict[str, int]:
    """Insert or update every record in the bundle.

    Args:
        store: Content store to write to.
        json_path: Path to the bundle file.

    Returns:
        Number of records loaded, keyed by section name.

    Raises:
        FileNotFoundError: If the bundle does not exist.
        pydantic.ValidationError: If a record does not match its model.
    """
    with open(json_path) as f:
        bundle = json.load(f)

    counts = {"students": 0, "problems": 0, "achievements": 0}

    for item in bundle.get("students", []):
        store.add_student(Student.model_validate(item))
        counts["students"] += 1

    for item in bundle.get("problems", []):
        store.add_problem(Problem.model_validate(item))
        counts["problems"] += 1

    # Bundle order becomes evaluation order
    for item in bundle.get("achievements", []):
        store.add_achievement(Achievement.model_validate(item))
        counts["achievements"] += 1

    logger.info(
        f"Loaded {counts['students']} students, {counts['problems']} problems, "
        f"{counts['achievements']} achievements from {Path(json_path).name}"
    )
    return counts
