from pathlib import Path

import pytest

from cirrus.config import ClusterConfig, _deep_merge, load_config, resolve_cluster
from cirrus.errors import ConfigurationError

from tests.conftest import make_config

pytestmark = [pytest.mark.unit]


class TestDeepMerge:
    def test_shallow_override(self):
        assert _deep_merge({"a": 1, "b": 2}, {"b": 3}) == {"a": 1, "b": 3}

    def test_nested_merge(self):
        base = {"clusters": {"batch": {"region": "us-east-1", "ami": "abc"}}}
        override = {"clusters": {"batch": {"region": "us-west-2"}}}
        result = _deep_merge(base, override)
        assert result == {"clusters": {"batch": {"region": "us-west-2", "ami": "abc"}}}

    def test_does_not_mutate_base(self):
        base = {"defaults": {"spot": False}}
        _deep_merge(base, {"defaults": {"spot": True}})
        assert base == {"defaults": {"spot": False}}


class TestValidate:
    @pytest.mark.parametrize(
        ("field", "message"),
        [
            ("max_instances", "missing max instances parameter"),
            ("disk_type", "missing disk type parameter"),
            ("disk_space", "missing disk space parameter"),
            ("ami", "missing AMI parameter"),
            ("region", "missing region parameter"),
            ("security_group", "missing EC2 security group"),
        ],
    )
    def test_missing_required(self, field: str, message: str) -> None:
        empty = 0 if field in ("max_instances", "disk_space") else ""
        with pytest.raises(ConfigurationError, match=message):
            make_config(**{field: empty}).validate()

    def test_first_missing_reported(self) -> None:
        with pytest.raises(ConfigurationError, match="missing max instances parameter"):
            ClusterConfig().validate()

    def test_complete_config_valid(self) -> None:
        make_config().validate()

    def test_tunables_positive(self) -> None:
        with pytest.raises(ConfigurationError, match="max_pending"):
            make_config(max_pending=0).validate()
        with pytest.raises(ConfigurationError, match="describe_page_size"):
            make_config(describe_page_size=0).validate()


class TestFromDict:
    def test_collections_frozen(self) -> None:
        cfg = ClusterConfig.from_dict({
            "instance_types": ["c5.large", "m5.large"],
            "labels": {"team": "data", "cost": 7},
        })
        assert cfg.instance_types == frozenset({"c5.large", "m5.large"})
        assert cfg.labels == {"team": "data", "cost": "7"}
        with pytest.raises(TypeError):
            cfg.labels["x"] = "y"  # type: ignore[index]

    def test_unknown_key(self) -> None:
        with pytest.raises(ConfigurationError, match="nodes"):
            ClusterConfig.from_dict({"nodes": 3})


class TestLoadConfig:
    def test_project_only(self, tmp_path: Path):
        (tmp_path / "cirrus.toml").write_text('[clusters.dev]\nmax_instances = 2\n')
        result = load_config(project_dir=tmp_path, global_path=tmp_path / "nonexistent.toml")
        assert result["clusters"]["dev"]["max_instances"] == 2
        assert result["defaults"] == {}

    def test_project_overrides_global(self, tmp_path: Path):
        global_toml = tmp_path / "defaults.toml"
        global_toml.write_text('[clusters.batch]\nmax_instances = 2\nregion = "us-east-1"\n')
        project = tmp_path / "project"
        project.mkdir()
        (project / "cirrus.toml").write_text('[clusters.batch]\nmax_instances = 8\n')
        result = load_config(project_dir=project, global_path=global_toml)
        assert result["clusters"]["batch"] == {"max_instances": 8, "region": "us-east-1"}


class TestResolveCluster:
    def test_defaults_apply(self, tmp_path: Path):
        (tmp_path / "cirrus.toml").write_text(
            '[defaults]\nregion = "us-west-2"\nsecurity_group = "sg-1"\nspot = true\n'
            '\n[clusters.batch]\nmax_instances = 20\nspot = false\n'
            'instance_types = ["c5.2xlarge"]\n',
        )
        cfg = resolve_cluster("batch", project_dir=tmp_path, global_path=tmp_path / "none.toml")
        assert cfg.region == "us-west-2"
        assert cfg.security_group == "sg-1"
        assert cfg.spot is False
        assert cfg.max_instances == 20
        assert cfg.instance_types == frozenset({"c5.2xlarge"})
        assert cfg.state_path == "~/.cirrus/state/batch.json"

    def test_unknown_cluster(self, tmp_path: Path):
        (tmp_path / "cirrus.toml").write_text('[clusters.batch]\nmax_instances = 1\n')
        with pytest.raises(KeyError, match="batch"):
            resolve_cluster("other", project_dir=tmp_path, global_path=tmp_path / "none.toml")
