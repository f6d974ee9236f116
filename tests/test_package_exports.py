import importlib


def _read_pyproject_version() -> str:
    import re
    from pathlib import Path

    txt = (Path(__file__).resolve().parents[1] / "pyproject.toml").read_text(encoding="utf-8")
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    assert m, "Could not locate [project].version in pyproject.toml"
    return m.group(1)


def test_convenience_imports_work():
    # Ensure top-level convenience imports are available (regression guard)
    import radar_gateway

    # Access via attribute (lazy import)
    assert hasattr(radar_gateway, "SafetyPipeline")
    assert hasattr(radar_gateway, "create_app")

    # Import directly
    from radar_gateway import SafetyPipeline, create_app  # noqa: F401

    # Component classes also exposed
    from radar_gateway import AdmissionController, BoundedExecutor, ContentGate, PermissionGate  # noqa: F401

    assert "MonitoringService" in dir(radar_gateway)

    # Ensure module caching works
    importlib.reload(radar_gateway)


def test_unknown_attribute_raises():
    import pytest

    import radar_gateway

    with pytest.raises(AttributeError):
        radar_gateway.NoSuchThing  # noqa: B018


def test_version_export_matches_pyproject():
    import radar_gateway

    assert hasattr(radar_gateway, "__version__")
    assert radar_gateway.__version__ == _read_pyproject_version()
