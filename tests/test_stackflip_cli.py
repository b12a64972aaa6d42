import shlex

import pytest

from convention_loader import StackRegionRule, default_config
from flip_errors import EXIT_CONFIG_ERROR, EXIT_UNSUPPORTED_LAYOUT, ConfigError
from stackflip import apply_options, main, parse_args, split_argv


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch, tmp_path):
    for name in ("STACKFLIP_CONFIG", "STACKFLIP_LINKER", "STACKFLIP_TIMEOUT", "STACKFLIP_VERBOSE"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


def test_split_argv():
    assert split_argv(["-v", "--", "-o", "fw.elf"]) == (["-v"], ["-o", "fw.elf"])
    assert split_argv(["-o", "fw.elf", "-v"]) == ([], ["-o", "fw.elf", "-v"])
    assert split_argv(["--", "a.o", "--", "b.o"]) == ([], ["a.o", "--", "b.o"])


def test_apply_options_layers_over_config():
    args = parse_args(["--region", "RAM", "--region", "SRAM2", "--stack-symbol", "_estack", "--no-verify"])
    config = apply_options(default_config(), args)

    assert config.convention.stack_symbol == "_estack"
    assert config.convention.stack_regions == (
        StackRegionRule("RAM", "_estack"),
        StackRegionRule("SRAM2", "_estack"),
    )
    assert config.link.verify_output is False


def test_apply_options_rejects_bad_timeout():
    with pytest.raises(ConfigError):
        apply_options(default_config(), parse_args(["--timeout", "0"]))


def test_no_linker_arguments(capsys):
    assert main(["-v", "--"]) == 2
    assert "no linker arguments" in capsys.readouterr().err


def test_links_with_linker_option(fake_linker):
    linker = fake_linker()
    assert main(["--linker", shlex.join(linker.command), "--", "-o", "fw.elf", "main.o"]) == 0
    assert len(linker.invocations()) == 2


def test_links_without_separator_using_environment(fake_linker, monkeypatch):
    linker = fake_linker()
    monkeypatch.setenv("STACKFLIP_LINKER", shlex.join(linker.command))
    assert main(["-o", "fw.elf", "main.o"]) == 0
    assert linker.invocations()[0][:3] == ["-o", "fw.elf", "main.o"]


def test_local_config_is_discovered(fake_linker, tmp_path):
    linker = fake_linker()
    (tmp_path / "stackflip.yaml").write_text(
        "schema_version: 1\n"
        "runtime:\n"
        "  stack_symbol: _estack\n"
        "link:\n"
        "  tool: {}\n".format(shlex.join(linker.command)),
        encoding="utf-8",
    )
    assert main(["main.o"]) == 0
    assert "_estack = 0x20010000;" in linker.fragment_text()


def test_first_pass_status_is_forwarded(fake_linker):
    linker = fake_linker(pass1_status=1)
    assert main(["--linker", shlex.join(linker.command), "--", "main.o"]) == 1
    assert len(linker.invocations()) == 1


def test_read_only_region_is_rejected(fake_linker):
    linker = fake_linker()
    status = main(["--linker", shlex.join(linker.command), "--region", "FLASH", "--", "main.o"])
    assert status == EXIT_UNSUPPORTED_LAYOUT
    assert len(linker.invocations()) == 1


def test_missing_config_file(capsys):
    assert main(["--config", "absent.yaml", "--", "main.o"]) == EXIT_CONFIG_ERROR
    assert "Config not found" in capsys.readouterr().err


def test_invalid_environment_timeout(monkeypatch):
    monkeypatch.setenv("STACKFLIP_TIMEOUT", "never")
    assert main(["main.o"]) == EXIT_CONFIG_ERROR


@pytest.mark.parametrize("symbol", ["a;b", "sp = 0", "two words"])
def test_stack_symbol_option_is_validated(symbol):
    with pytest.raises(ConfigError, match="--stack-symbol"):
        apply_options(default_config(), parse_args(["--stack-symbol", symbol]))


def test_invalid_stack_symbol_exits_before_linking(fake_linker):
    linker = fake_linker()
    status = main(["--linker", shlex.join(linker.command), "--stack-symbol", "a;b", "--", "main.o"])
    assert status == EXIT_CONFIG_ERROR
    assert linker.invocations() == []
