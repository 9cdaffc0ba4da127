import json
from decimal import Decimal

import pytest

from memprobe import cli
from memprobe.core.errors import CgroupUnavailable
from memprobe.core.models import ProcessData
from memprobe.services.usage_store import UsageStore

MB = 1024 * 1024


class FakeExecutor:
    needs = 128 * MB
    error = None
    seen = []

    def __init__(self, settings, collector=None):
        self.settings = settings

    def run(self, spec, limit):
        FakeExecutor.seen.append((spec, limit))
        if FakeExecutor.error:
            raise FakeExecutor.error
        code = 95 if limit >= FakeExecutor.needs else -9
        return ProcessData(code, Decimal("0.5"), Decimal("1.25"), limit)


@pytest.fixture
def fake(monkeypatch, tmp_path):
    FakeExecutor.error = None
    FakeExecutor.seen = []
    monkeypatch.setattr(cli, "RestrictedExecutor", FakeExecutor)
    conf = tmp_path / "memprobe.yaml"
    conf.write_text("log_level: WARNING\n")
    return conf


class TestCli:
    def test_bisect_prints_boundary(self, fake, capsys):
        rc = cli.main(["--config", str(fake), "bisect", "--low", "0", "--high", "1G",
                       "--iterations", "20", "--", "stress", "--vm", "1"])
        assert rc == 0
        assert int(capsys.readouterr().out.strip()) == 128 * MB
        spec, _ = FakeExecutor.seen[0]
        assert spec.cmd == ["stress", "--vm", "1"]

    def test_run_prints_json(self, fake, capsys):
        rc = cli.main(["--config", str(fake), "run", "--limit", "256M", "--", "true"])
        assert rc == 0
        out = json.loads(capsys.readouterr().out)
        assert out == {"exit_code": 95, "cpu_usage_seconds": "0.5",
                       "wall_seconds": "1.25", "mem_limit_bytes": 256 * MB}

    def test_clean_env_and_extra_vars(self, fake, monkeypatch):
        monkeypatch.setenv("AMBIENT", "1")
        cli.main(["--config", str(fake), "run", "--limit", "1M", "--clean-env",
                  "--env", "A=1", "--env", "B=x=y", "--", "true"])
        spec, _ = FakeExecutor.seen[0]
        assert spec.env == {"A": "1", "B": "x=y"}

    def test_inherits_env_by_default(self, fake, monkeypatch):
        monkeypatch.setenv("AMBIENT", "1")
        cli.main(["--config", str(fake), "run", "--limit", "1M", "--", "true"])
        spec, _ = FakeExecutor.seen[0]
        assert spec.env["AMBIENT"] == "1"

    def test_cgroup_unavailable_exits_nonzero(self, fake, capsys):
        FakeExecutor.error = CgroupUnavailable("delegated cgroup root /sys/fs/cgroup/x does not exist")
        rc = cli.main(["--config", str(fake), "bisect", "--high", "1G", "--", "true"])
        assert rc == 1
        captured = capsys.readouterr()
        assert captured.out == ""
        assert "does not exist" in captured.err

    def test_usage_store_round_trip(self, fake, tmp_path, capsys):
        store = tmp_path / "usage.txt"
        fake.write_text(f"log_level: WARNING\nusage_store: {store}\n")
        cli.main(["--config", str(fake), "bisect", "--high", "1G", "--iterations", "20",
                  "--workload-id", "gc/Foo.java#Foo#0", "--", "true"])
        assert UsageStore.load(store).get("gc/Foo.java#Foo#0").mem_limit_bytes == 128 * MB

    def test_missing_command(self, fake):
        with pytest.raises(SystemExit) as ei:
            cli.main(["--config", str(fake), "run", "--limit", "1M"])
        assert ei.value.code == 2

    def test_low_above_high(self, fake):
        with pytest.raises(SystemExit) as ei:
            cli.main(["--config", str(fake), "bisect", "--low", "2G", "--high", "1G", "--", "true"])
        assert ei.value.code == 2

    def test_bad_size(self, fake):
        with pytest.raises(SystemExit):
            cli.main(["--config", str(fake), "run", "--limit", "lots", "--", "true"])
