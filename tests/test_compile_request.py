"""Tests for compile request handling."""

import json

import pytest

import compile_request
from bpf_objects import Program
from bpf_export import ExportInvariantViolation
from compile_request import (
    compile_bpf, compile_filter_opcodes, CompileResponse, CompilerConfig, DEFAULT_CONFIG,
)
from pcap_compiler import LinkType, CompileError, compile_filter
from conftest import FakeCompiler, TCP_OPCODES, needs_libpcap


class TestLinkType:

    @pytest.mark.parametrize("name, link_type", [
        ("ipv4", LinkType.IPv4),
        ("ipv6", LinkType.IPv6),
        ("eth", LinkType.Eth),
        ("raw", LinkType.Raw),
        ("IPv6", LinkType.IPv4),
        ("token-ring", LinkType.IPv4),
        ("", LinkType.IPv4),
        (None, LinkType.IPv4),
    ])
    def test_from_name(self, name, link_type):
        assert LinkType.from_name(name) is link_type


class TestResponse:

    def test_fields(self):
        response = CompileResponse(iptables="# rule")
        assert json.loads(json.dumps(response)) == {"Iptables": "# rule", "Error": "", "Disasm": ""}

    def test_error(self):
        response = CompileResponse(error="syntax error")
        assert response.iptables == ""
        assert response.error == "syntax error"


class TestWithFakeCompiler:

    def test_success(self, fake_compiler):
        response = compile_bpf("tcp", "ipv4", compiler=fake_compiler)
        assert response.error == ""
        assert response["Disasm"] == ""
        assert response.iptables.startswith('# iptables -I INPUT -m bpf --bytecode "4, 48 0 0 9,')
        assert response.iptables.endswith('--comment "tcp"')
        assert fake_compiler.issued[0].release_count == 1

    def test_link_passed_to_compiler(self, fake_compiler):
        response = compile_bpf("tcp", "ipv6", compiler=fake_compiler)
        assert fake_compiler.issued[0].link_type is LinkType.IPv6
        assert response.iptables.startswith("# ip6tables -I INPUT")

    def test_unknown_link_is_ipv4(self, fake_compiler):
        response = compile_bpf("tcp", "fddi", compiler=fake_compiler)
        assert fake_compiler.issued[0].link_type is LinkType.IPv4
        assert response.iptables.startswith("# iptables -I INPUT")

    def test_config_passed_to_compiler(self, fake_compiler):
        config = CompilerConfig(optimize=False, snaplen=1500, netmask=0xFFFFFF00)
        compile_bpf("tcp", "ipv4", config=config, compiler=fake_compiler)
        assert fake_compiler.kwargs[0] == {"optimize": False, "snaplen": 1500, "netmask": 0xFFFFFF00}

    def test_compile_error(self):
        compiler = FakeCompiler(error="syntax error in filter expression")
        response = compile_bpf("this is not a filter", "ipv4", compiler=compiler)
        assert response.error == "syntax error in filter expression"
        assert response.iptables == ""

    def test_invalid_program_is_an_error(self):
        compiler = FakeCompiler(program=Program.from_opcodes(TCP_OPCODES[:2]))
        response = compile_bpf("tcp", "ipv4", compiler=compiler)
        assert response.error != ""
        assert response.iptables == ""
        assert compiler.issued[0].release_count == 1

    @pytest.mark.parametrize("link", ["eth", "raw"])
    def test_unsupported_link(self, fake_compiler, link):
        response = compile_bpf("tcp", link, compiler=fake_compiler)
        assert response.error != ""
        assert response.iptables == ""
        assert fake_compiler.issued[0].release_count == 1

    def test_export_violation_is_fatal(self, fake_compiler, monkeypatch):
        monkeypatch.setattr(compile_request, "export", lambda program: [])
        with pytest.raises(ExportInvariantViolation):
            compile_bpf("tcp", "ipv4", compiler=fake_compiler)
        assert fake_compiler.issued[0].release_count == 1

    def test_opcodes(self, fake_compiler):
        result = compile_filter_opcodes("tcp", LinkType.IPv4, compiler=fake_compiler)
        assert [tuple(opcode) for opcode in result.opcodes] == TCP_OPCODES
        assert result.link_type is LinkType.IPv4
        assert result.iptables.startswith("# iptables")

    def test_opcodes_without_rule(self, fake_compiler):
        result = compile_filter_opcodes("tcp", LinkType.Eth, compiler=fake_compiler, rule=False)
        assert result.iptables == ""
        assert [tuple(opcode) for opcode in result.opcodes] == TCP_OPCODES
        assert fake_compiler.issued[0].release_count == 1

    def test_unencodable_expression(self, fake_compiler):
        response = compile_bpf("tcp \ud800" + "x" * 300, "ipv4", compiler=fake_compiler)
        assert response.error == ""
        assert '--comment "tcp ?xxx' in response.iptables
        assert response.iptables.endswith('..."')

    def test_release_twice(self, fake_compiler):
        compiled = fake_compiler("tcp", LinkType.IPv4)
        compiled.release()
        with pytest.raises(ValueError):
            compiled.release()


@needs_libpcap
class TestWithLibpcap:

    def test_tcp_port_80(self):
        response = compile_bpf("tcp port 80", "ipv4")
        assert response.error == ""
        result = compile_filter_opcodes("tcp port 80", LinkType.IPv4)
        count = len(result.opcodes)
        assert count > 0
        assert response.iptables.startswith(f'# iptables -I INPUT -m bpf --bytecode "{count}, ')
        assert response.iptables.endswith('-j DROP -m comment --comment "tcp port 80"')

    def test_tcp_port_80_ipv6(self):
        response = compile_bpf("tcp port 80", "ipv6")
        assert response.error == ""
        assert response.iptables.startswith("# ip6tables -I INPUT -m bpf --bytecode ")

    def test_syntax_error(self):
        response = compile_bpf("this is not a filter", "ipv4")
        assert response.error != ""
        assert response.iptables == ""

    def test_unoptimized(self):
        config = DEFAULT_CONFIG._replace(optimize=False)
        response = compile_bpf("udp and port 53", "ipv4", config=config)
        assert response.error == ""

    def test_native_release_once(self):
        with compile_filter("tcp", LinkType.IPv4) as compiled:
            assert compiled.program.length() > 0
            assert compiled.program.instruction_at(compiled.program.length() - 1).is_ret()
        assert compiled.released
        with pytest.raises(ValueError):
            compiled.release()


def test_unencodable_expression_is_a_compile_error():
    # rejected before libpcap is loaded
    with pytest.raises(CompileError):
        compile_filter("tcp \ud800", LinkType.IPv4)
    response = compile_bpf("tcp \ud800", "ipv4")
    assert response.iptables == ""
    assert response.error != ""
