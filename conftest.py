"""
Pytest configuration and markers
=================================
"""
import pytest


def pytest_configure(config):
    """Register custom markers"""
    # Полные сценарии (симуляции) - медленнее юнит-тестов
    config.addinivalue_line(
        "markers",
        "scenario: End-to-end scripted simulations"
    )

    # Инварианты детектора (pruning, refill, bounds)
    config.addinivalue_line(
        "markers",
        "invariant: Detector invariants that must hold for any input"
    )
