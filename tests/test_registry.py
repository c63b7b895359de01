"""Tests for ievms.registry module."""

from __future__ import annotations

import codecs

import pytest

from ievms.registry import mark_networks_private, render_reg_file, rewrite_network_profiles, write_reg_file


class TestRenderRegFile:
    def test_dword_and_string_values(self):
        text = render_reg_file("HKEY_LOCAL_MACHINE\\Software\\X", {"Flag": 1, "Path": 'C:\\a "b"'})
        assert text == (
            "Windows Registry Editor Version 5.00\r\n"
            "\r\n"
            "[HKEY_LOCAL_MACHINE\\Software\\X]\r\n"
            '"Flag"=dword:00000001\r\n'
            '"Path"="C:\\\\a \\"b\\""\r\n'
        )

    def test_rejects_bool(self):
        with pytest.raises(TypeError):
            render_reg_file("HKEY_CURRENT_USER\\X", {"Flag": True})


class TestWriteRegFile:
    def test_writes_once(self, tmp_path):
        path = tmp_path / "tweak.reg"
        write_reg_file(path, "HKEY_CURRENT_USER\\X", {"A": 1})
        write_reg_file(path, "HKEY_CURRENT_USER\\Y", {"B": 2})
        assert b"[HKEY_CURRENT_USER\\X]" in path.read_bytes()
        assert b"Y]" not in path.read_bytes()


class TestNetworkProfiles:
    EXPORT = "\r\n".join(
        [
            "Windows Registry Editor Version 5.00",
            "",
            "[HKEY_LOCAL_MACHINE\\SOFTWARE\\Microsoft\\Windows NT\\CurrentVersion\\NetworkList\\Profiles\\{1}]",
            '"ProfileName"="Network"',
            '"Category"=dword:00000000',
            "",
        ]
    )

    def _encoded(self):
        return codecs.BOM_UTF16_LE + self.EXPORT.encode("utf-16-le")

    def test_public_networks_become_private(self):
        out = mark_networks_private(self._encoded()).decode("utf-16-le")
        lines = out.split("\r\n")
        assert '"Category"=dword:00000000' not in lines
        index = lines.index('"Category"=dword:00000001')
        assert lines[index + 1 : index + 3] == ['"CategoryType"=dword:00000000', '"IconType"=dword:00000000']

    def test_bom_is_kept(self):
        assert mark_networks_private(self._encoded()).startswith(codecs.BOM_UTF16_LE)

    def test_rewrite_files(self, tmp_path):
        source = tmp_path / "netloc.reg.in"
        source.write_bytes(self._encoded())
        target = rewrite_network_profiles(source, tmp_path / "netloc.reg.out")
        assert b'"\x00C\x00a\x00t\x00e\x00g\x00o\x00r\x00y\x00T\x00y\x00p\x00e\x00"' in target.read_bytes()
