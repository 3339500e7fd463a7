"""Tests for the language runtime registry."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from codejudge.errors import ConfigError, UnsupportedLanguageError
from codejudge.models import ResourceLimits
from codejudge.registry import RuntimeProfile, RuntimeRegistry


def test_default_languages():
    registry = RuntimeRegistry.default()
    assert registry.languages() == ["cpp", "java", "javascript", "python"]
    assert len(registry) == 4


def test_resolve_aliases_case_insensitive():
    registry = RuntimeRegistry.default()
    assert registry.resolve("Python").language == "python"
    assert registry.resolve("py").language == "python"
    assert registry.resolve("js").language == "javascript"
    assert registry.resolve("c++").language == "cpp"
    assert "node" in registry
    assert "cobol" not in registry


def test_resolve_unsupported():
    with pytest.raises(UnsupportedLanguageError) as exc:
        RuntimeRegistry.default().resolve("ruby")
    assert exc.value.language == "ruby"
    assert "python" in exc.value.supported
    assert not exc.value.retryable


def test_compiled_profiles():
    registry = RuntimeRegistry.default()
    assert registry.resolve("java").requires_compile
    assert registry.resolve("cpp").requires_compile
    assert not registry.resolve("python").requires_compile
    assert not registry.resolve("javascript").requires_compile


def test_render_commands():
    profile = RuntimeRegistry.default().resolve("javascript")
    argv = profile.run_argv(Path("/tmp/w"), ResourceLimits(memory_kb=256 * 1024))
    assert argv[0] == "node"
    assert "--max-old-space-size=192" in argv
    assert argv[-1] == "/tmp/w/main.js"

    cpp = RuntimeRegistry.default().resolve("cpp")
    compile_argv = cpp.compile_argv(Path("/tmp/w"))
    assert compile_argv[0] == "g++"
    assert "/tmp/w/main.cpp" in compile_argv
    assert cpp.run_argv(Path("/tmp/w")) == ["/tmp/w/main"]


def test_bad_template():
    profile = RuntimeProfile(language="x", run_command=("run", "{nope}"), source_filename="x")
    with pytest.raises(ConfigError):
        profile.run_argv(Path("/tmp"))


def test_duplicate_profiles():
    p = RuntimeProfile(language="x", run_command=("x",), source_filename="x")
    with pytest.raises(ConfigError):
        RuntimeRegistry([p, p])


def test_from_dict_layers_over_builtin():
    registry = RuntimeRegistry.from_dict(
        {
            "languages": {
                "python": {"limits": {"wall_time_ms": 1500}},
                "ruby": {"run": ["ruby", "{source}"], "source": "main.rb", "aliases": ["rb"]},
            }
        }
    )
    assert registry.languages() == ["python", "ruby"]
    python = registry.resolve("python")
    assert python.limits.wall_time_ms == 1500
    assert python.expression_template
    assert registry.resolve("rb").run_argv(Path("/w")) == ["ruby", "/w/main.rb"]


def test_from_dict_errors():
    with pytest.raises(ConfigError):
        RuntimeRegistry.from_dict({})
    with pytest.raises(ConfigError):
        RuntimeRegistry.from_dict({"languages": {"ruby": {"run": ["ruby"]}}})
    with pytest.raises(ConfigError):
        RuntimeRegistry.from_dict({"languages": {"python": {"limits": {"cpu_ms": 5}}}})


def test_from_file(tmp_path):
    path = tmp_path / "runtimes.json"
    path.write_text(json.dumps({"languages": {"python": {}}}))
    assert RuntimeRegistry.from_file(path).languages() == ["python"]
    with pytest.raises(ConfigError):
        RuntimeRegistry.from_file(tmp_path / "missing.json")


def test_with_limits():
    registry = RuntimeRegistry.default().with_limits(wall_time_ms=1234, memory_kb=None)
    for profile in registry.profiles():
        assert profile.limits.wall_time_ms == 1234
        assert profile.limits.memory_kb == ResourceLimits().memory_kb
