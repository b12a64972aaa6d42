import pytest

from conftest import REPO_ROOT
from convention_loader import (
    DEFAULT_REPORT_FLAGS,
    DEFAULT_STACK_SYMBOL,
    POLICY_ERROR,
    POLICY_HIGHEST,
    StackRegionRule,
    apply_environment,
    config_from_mapping,
    default_config,
    discover_config,
    load_config,
)
from flip_errors import EXIT_CONFIG_ERROR, ConfigError

EXAMPLE_CONFIG = REPO_ROOT / "examples" / "stm32f4" / "stackflip.yaml"


def test_example_config_loads():
    config = load_config(EXAMPLE_CONFIG)
    conv = config.convention

    assert config.source == EXAMPLE_CONFIG
    assert conv.stack_symbol == "_estack"
    assert conv.stack_regions == (StackRegionRule("RAM", "_estack"),)
    assert conv.region_policy == POLICY_ERROR
    assert conv.allow_override is False
    assert config.link.tool == ["arm-none-eabi-ld"]
    assert config.link.report_flags == ["--print-map", "--print-memory-usage"]
    assert config.link.timeout == 120.0
    assert config.link.verify_output is True


def test_defaults():
    config = default_config()
    assert config.convention.stack_symbol == DEFAULT_STACK_SYMBOL
    assert config.convention.symbols() == [DEFAULT_STACK_SYMBOL]
    assert config.link.tool == ["ld"]
    assert config.link.report_flags == list(DEFAULT_REPORT_FLAGS)
    assert config.link.script_flag == "-T"
    assert config.link.timeout is None
    assert config.source is None


def test_minimal_mapping_uses_defaults():
    config = config_from_mapping({"schema_version": 1})
    assert config.convention.stack_symbol == DEFAULT_STACK_SYMBOL
    assert config.link.alignment_cap == 8


def test_stack_region_forms():
    config = config_from_mapping(
        {
            "schema_version": 1,
            "runtime": {
                "stack_symbol": "_sp",
                "stack_regions": ["DTCM", {"region": "SRAM", "stack_symbol": "_sp1"}],
                "region_policy": "highest",
            },
        }
    )
    conv = config.convention
    assert conv.stack_regions == (StackRegionRule("DTCM", "_sp"), StackRegionRule("SRAM", "_sp1"))
    assert conv.symbols() == ["_sp", "_sp1"]
    assert conv.region_policy == POLICY_HIGHEST


def test_single_region_string():
    config = config_from_mapping({"schema_version": 1, "runtime": {"stack_regions": "RAM"}})
    assert config.convention.stack_regions == (StackRegionRule("RAM", DEFAULT_STACK_SYMBOL),)


def test_tool_string_is_shell_split():
    config = config_from_mapping({"schema_version": 1, "link": {"tool": "ccache arm-none-eabi-gcc -nostartfiles"}})
    assert config.link.tool == ["ccache", "arm-none-eabi-gcc", "-nostartfiles"]


def test_hex_alignment_cap():
    config = config_from_mapping({"schema_version": 1, "link": {"alignment_cap": "0x10"}})
    assert config.link.alignment_cap == 16


@pytest.mark.parametrize(
    "data, message",
    [
        ([1, 2], "mapping"),
        ({}, "schema_version"),
        ({"schema_version": 2}, "Unsupported schema_version"),
        ({"schema_version": 1, "runtime": []}, "runtime must be a mapping"),
        ({"schema_version": 1, "runtime": {"stack_symbol": "a b"}}, "invalid symbol"),
        ({"schema_version": 1, "runtime": {"stack_symbol": ""}}, "symbol name"),
        ({"schema_version": 1, "runtime": {"region_policy": "lowest"}}, "region_policy"),
        ({"schema_version": 1, "runtime": {"allow_override": "yes"}}, "allow_override"),
        ({"schema_version": 1, "runtime": {"stack_regions": ["RAM", "RAM"]}}, "listed twice"),
        ({"schema_version": 1, "runtime": {"stack_regions": [{"stack_symbol": "x"}]}}, "'region'"),
        ({"schema_version": 1, "runtime": {"stack_regions": [7]}}, "region name or mapping"),
        ({"schema_version": 1, "link": {"tool": []}}, "must not be empty"),
        ({"schema_version": 1, "link": {"tool": 5}}, "command string"),
        ({"schema_version": 1, "link": {"timeout": 0}}, "positive"),
        ({"schema_version": 1, "link": {"timeout": "soon"}}, "seconds"),
        ({"schema_version": 1, "link": {"alignment_cap": 6}}, "power of two"),
        ({"schema_version": 1, "link": {"verify_output": "no"}}, "verify_output"),
        ({"schema_version": 1, "link": {"report_flags": 3}}, "list of flags"),
    ],
)
def test_invalid_config(data, message):
    with pytest.raises(ConfigError, match=message) as excinfo:
        config_from_mapping(data)
    assert excinfo.value.exit_code == EXIT_CONFIG_ERROR


def test_unknown_top_level_key_warns():
    with pytest.warns(UserWarning, match="linker_scripts"):
        config_from_mapping({"schema_version": 1, "linker_scripts": []})


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "absent.yaml")


def test_invalid_yaml(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("schema_version: 1\nruntime: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="invalid YAML"):
        load_config(path)


def test_discovery_order(tmp_path):
    local = tmp_path / "stackflip.yaml"
    local.write_text("schema_version: 1\nruntime:\n  stack_symbol: _local\n", encoding="utf-8")
    env_file = tmp_path / "env.yaml"
    env_file.write_text("schema_version: 1\nruntime:\n  stack_symbol: _env\n", encoding="utf-8")
    explicit = tmp_path / "explicit.yaml"
    explicit.write_text("schema_version: 1\nruntime:\n  stack_symbol: _explicit\n", encoding="utf-8")
    environ = {"STACKFLIP_CONFIG": str(env_file)}

    assert discover_config(str(explicit), environ, tmp_path).convention.stack_symbol == "_explicit"
    assert discover_config(None, environ, tmp_path).convention.stack_symbol == "_env"
    assert discover_config(None, {}, tmp_path).convention.stack_symbol == "_local"
    assert discover_config(None, {}, tmp_path / "elsewhere").source is None


def test_apply_environment():
    config = apply_environment(
        default_config(),
        {"STACKFLIP_LINKER": "riscv64-unknown-elf-ld -m elf32lriscv", "STACKFLIP_TIMEOUT": "2.5"},
    )
    assert config.link.tool == ["riscv64-unknown-elf-ld", "-m", "elf32lriscv"]
    assert config.link.timeout == 2.5


def test_apply_environment_rejects_bad_timeout():
    with pytest.raises(ConfigError):
        apply_environment(default_config(), {"STACKFLIP_TIMEOUT": "-1"})
