from __future__ import annotations

import importlib
from pathlib import Path

import pytest

PKG_ROOT = Path(__file__).resolve().parents[1] / "intentiq"


def _module_names() -> list[str]:
    names = []
    for path in sorted(PKG_ROOT.rglob("*.py")):
        rel = path.relative_to(PKG_ROOT.parent).with_suffix("")
        parts = list(rel.parts)
        if parts[-1] == "__init__":
            parts.pop()
        names.append(".".join(parts))
    return names


def test_every_package_module_imports():
    names = _module_names()
    assert "intentiq.core.identity.resolver" in names
    failures = []
    for module in names:
        try:
            importlib.import_module(module)
        except Exception as exc:
            failures.append(f"{module}: {exc.__class__.__name__}: {exc}")
    if failures:
        pytest.fail("Module import failures:\n" + "\n".join(failures))
