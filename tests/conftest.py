"""Shared test fixtures for the extraction engine test suite."""

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest


def line(text: str, x: float, y: float, w: float = 100, h: float = 20) -> dict[str, Any]:
    """A raw OCR line centered on ``(x, y)``."""
    left, right = x - w / 2, x + w / 2
    top, bottom = y - h / 2, y + h / 2
    return {
        "text": text,
        "boundingBox": [left, top, right, top, right, bottom, left, bottom],
    }


@pytest.fixture
def make_line() -> Callable[..., dict[str, Any]]:
    return line


@pytest.fixture
def make_pages() -> Callable[..., list[dict[str, Any]]]:
    """Wrap ``(text, x, y)`` tuples into a single flat OCR page."""

    def build(*specs: tuple) -> list[dict[str, Any]]:
        return [{"lines": [line(*spec) for spec in specs]}]

    return build


@pytest.fixture
def meter_pages(make_pages) -> list[dict[str, Any]]:
    """A meter nameplate with the register sitting right below ``M3``."""
    return make_pages(
        ("SENSUS", 500, 100),
        ("ISO 4064", 500, 200),
        ("Q3: 5 m³/h", 500, 300),
        ("PN16 bar", 500, 400),
        ("Class B", 500, 500),
        ("M3", 500, 600),
        ("0012345", 500, 700),
    )


@pytest.fixture
def barcode_receipt_pages(make_pages) -> list[dict[str, Any]]:
    """One barcode-anchored item with quantity pricing and a line total."""
    return make_pages(
        ("5012345678900", 200, 100),
        ("Milk 2L", 200, 180),
        ("2 x 1.50", 1600, 260),
        ("3.00", 1600, 340),
    )


@pytest.fixture
def full_receipt_pages(make_pages) -> list[dict[str, Any]]:
    return make_pages(
        ("Green Grocers Ltd", 400, 50),
        ("Market Street, Nairobi", 400, 100),
        ("Invoice No: 1234567", 400, 150),
        ("Date: 12/03/2024", 400, 200),
        ("Bread 600g", 300, 300),
        ("1 x 2.50", 1600, 300),
        ("2.50", 1600, 330),
        ("Eggs Tray", 300, 400),
        ("2 x 4.00", 1600, 400),
        ("8.00", 1600, 430),
        ("Delivery Fee 1.50", 300, 500),
        ("VAT", 300, 600),
        ("1.60", 1600, 600),
        ("TOTAL 13.60", 300, 700),
        ("Payment", 300, 800),
        ("M-PESA", 700, 800),
    )


@pytest.fixture
def consumption_layout() -> dict[str, Any]:
    """A layout result holding a two-by-two consumption table."""
    return {
        "content": "Name Jan\nJane Doe 120",
        "tables": [
            {
                "rowCount": 2,
                "columnCount": 2,
                "cells": [
                    {"content": "Name", "rowIndex": 0, "columnIndex": 0},
                    {"content": "Jan", "rowIndex": 0, "columnIndex": 1},
                    {"content": "Jane Doe", "rowIndex": 1, "columnIndex": 0},
                    {"content": "120", "rowIndex": 1, "columnIndex": 1},
                ],
            }
        ],
    }


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def config_dir(project_root: Path) -> Path:
    """Return the configs directory."""
    return project_root / "configs"
