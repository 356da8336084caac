import importlib


def _read_pyproject_version() -> str:
    import re
    from pathlib import Path

    txt = (Path(__file__).resolve().parents[1] / "pyproject.toml").read_text(encoding="utf-8")
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    assert m, "Could not locate [project].version in pyproject.toml"
    return m.group(1)


def test_convenience_imports_work():
    import lsat_gateway

    assert hasattr(lsat_gateway, "LSATAuthorizer")
    assert hasattr(lsat_gateway, "create_app")

    from lsat_gateway import LSATAuthorizer, create_app  # noqa: F401
    from lsat_gateway import Caveat, CaveatRegistry, Token, TokenMinter  # noqa: F401
    from lsat_gateway import DerivedCaveat, GatewayConfig, Identifier, LSATError, StaticCaveat  # noqa: F401

    importlib.reload(lsat_gateway)


def test_unknown_attribute_raises():
    import pytest

    import lsat_gateway

    with pytest.raises(AttributeError):
        lsat_gateway.NotAThing  # noqa: B018


def test_version_export_matches_pyproject():
    import lsat_gateway

    assert hasattr(lsat_gateway, "__version__")
    assert lsat_gateway.__version__ == _read_pyproject_version()
