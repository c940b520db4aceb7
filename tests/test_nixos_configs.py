"""Tests for nixos_configs module."""
import pytest

from k8s_infra.errors import ConfigurationError
from k8s_infra.nixos_configs import NixosConfigWriter, is_placeholder, render_template, should_overwrite


class TestPlaceholders:
    def test_single_comment_line_is_placeholder(self, tmp_path):
        config = tmp_path / "control.nix"
        config.write_text("# Development control plane config\n")
        assert is_placeholder(config)

    def test_real_config_is_not_placeholder(self, tmp_path):
        config = tmp_path / "control.nix"
        config.write_text("# dev config\n{ config, pkgs, ... }:\n{ }\n")
        assert not is_placeholder(config)

    def test_should_overwrite(self, tmp_path):
        config = tmp_path / "worker.nix"
        assert should_overwrite(config)

        config.write_text("{ }\n")
        assert not should_overwrite(config)
        assert should_overwrite(config, force=True)

    def test_non_utf8_file_is_kept(self, tmp_path):
        config = tmp_path / "worker.nix"
        config.write_bytes(b"\xff\xfe{ }\n")

        assert not should_overwrite(config)


class TestRender:
    def test_control_plane_uses_environment(self):
        text = render_template("control.nix.j2", environment="prod")
        assert 'networking.hostName = "k8s-prod-control";' in text
        assert 'K8S_ENV = "prod";' in text
        assert "{{" not in text


class TestNixosConfigWriter:
    def test_populate_all(self, project_tree):
        result = NixosConfigWriter(project_tree).populate()

        nixos = project_tree.nixos_dir
        assert sorted(p.relative_to(nixos).as_posix() for p in result.written) == [
            "common/configuration.nix",
            "dev/control.nix",
            "dev/worker.nix",
            "prod/control.nix",
            "prod/worker.nix",
        ]
        assert result.skipped == []
        assert 'K8S_ENV = "dev";' in (nixos / "dev" / "worker.nix").read_text()

    def test_populate_single_environment(self, project_tree):
        result = NixosConfigWriter(project_tree).populate("dev")

        assert len(result.written) == 3
        assert not (project_tree.nixos_dir / "prod" / "control.nix").exists()
        assert (project_tree.nixos_dir / "prod").is_dir()

    def test_replaces_placeholder_but_keeps_edits(self, project_tree):
        dev = project_tree.nixos_dir / "dev"
        dev.mkdir()
        (dev / "control.nix").write_text("# Development control plane config\n")
        (dev / "worker.nix").write_text("{ custom = true; }\n")

        result = NixosConfigWriter(project_tree).populate("dev")

        assert dev / "worker.nix" in result.skipped
        assert (dev / "worker.nix").read_text() == "{ custom = true; }\n"
        assert "services.kubernetes" in (dev / "control.nix").read_text()

    def test_force_overwrites(self, project_tree):
        dev = project_tree.nixos_dir / "dev"
        dev.mkdir()
        (dev / "worker.nix").write_text("{ custom = true; }\n")

        NixosConfigWriter(project_tree, force=True).populate("dev")

        assert "services.kubernetes" in (dev / "worker.nix").read_text()

    def test_invalid_environment(self, project_tree):
        with pytest.raises(ConfigurationError, match="Invalid environment: staging"):
            NixosConfigWriter(project_tree).populate("staging")
