"""
Pytest configuration and shared fixtures.
"""

import sys
from pathlib import Path
from typing import Any, Dict, List

import pytest

# Add repo root and the test helpers to path
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from concierge.entities import SessionContext
from fakes import FakeGenerator


@pytest.fixture
def fake_generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def known_context() -> SessionContext:
    return SessionContext(
        customer_id="sarah@example.com",
        name="Sarah",
        email="sarah@example.com",
        identity_tier="known",
        authenticated=True,
        skin_type="Dry",
        recent_purchases=["moisturizer-hydra"],
        loyalty_tier="Gold",
        meaningful_events=["Upcoming trip to Mykonos"],
        missing_profile_fields=["Birthday"],
    )


@pytest.fixture
def sample_catalog() -> List[Dict[str, Any]]:
    return [
        {"id": "cleanser-gentle", "name": "Gentle Foaming Cleanser", "category": "cleanser", "price": 28},
        {"id": "moisturizer-hydra", "name": "Hydra Barrier Cream", "category": "moisturizer", "price": 54,
         "attributes": {"ingredients": ["ceramides", "squalane"]}},
        {"id": "serum-vitc", "name": "Vitamin C Serum", "category": "serum", "price": 68},
        {"id": "serum-retinol", "name": "Night Retinol Serum", "category": "serum", "price": 72},
        {"id": "spf-daily", "name": "Daily Mineral SPF 50", "category": "sunscreen", "price": 36,
         "attributes": {"isTravel": True}},
        {"id": "travel-kit", "name": "Carry-On Essentials Kit", "category": "travel", "price": 45},
        {"id": "fragrance-noir", "name": "Noir Eau de Parfum", "category": "fragrance", "price": 120},
    ]
