"""Integration tests for the package scripts."""
import configparser
import copy
import os

import numpy as np
import pytest

from .context import align_script, utils


@pytest.fixture
def align_ini_path():
    return os.path.join(os.path.dirname(align_script.__file__), "align.ini")


@pytest.fixture
def config(align_ini_path):
    config = configparser.ConfigParser(inline_comment_prefixes='#')
    config.read(align_ini_path)
    config.set("benchmark", "repeats", "1")
    config.set("benchmark", "num_threads", "[1, 2]")
    config.set("options", "draw", "False")
    config.set("options", "memory_usage", "False")
    return config


@pytest.fixture
def cloud_paths(tmp_path):
    rng = np.random.default_rng(seed=3)
    target = utils.get_point_cloud_from_points(rng.uniform(low=0.0, high=3.0, size=(1000, 3)))
    source = copy.deepcopy(target).translate([0.05, 0.0, 0.02])
    target_path = str(tmp_path / "target.pcd")
    source_path = str(tmp_path / "source.pcd")
    utils.write_point_cloud(target_path, target)
    utils.write_point_cloud(source_path, source)
    return target_path, source_path


def test_paths(align_ini_path):
    assert os.path.exists(align_ini_path)


class TestAlign:

    def test_eval_config(self, align_ini_path):
        config = configparser.ConfigParser(inline_comment_prefixes='#')
        config.read(align_ini_path)
        config_dict = align_script.eval_config(config)
        assert config_dict["data"]["output_dir"] == "pcd"
        assert config_dict["data"]["extension"] == ".pcd"
        assert config_dict["processing"]["leaf_size"] == (0.1, 0.1, 0.1)
        assert config_dict["benchmark"]["repeats"] == 10
        assert config_dict["benchmark"]["num_threads"] == [1, -1]
        assert config_dict["benchmark"]["fail_fast"] is False
        assert config_dict["options"]["draw"] is True

    @pytest.mark.parametrize("argv", [[], ["target.pcd"], ["a.pcd", "b.pcd", "c.pcd", "d.pcd"]])
    def test_usage(self, argv, capsys):
        assert align_script.run(argv) == 0
        assert "usage: align target.pcd source.pcd" in capsys.readouterr().out

    def test_main_exits_with_zero_on_usage(self, monkeypatch):
        monkeypatch.setattr("sys.argv", ["align"])
        with pytest.raises(SystemExit) as e:
            align_script.main()
        assert e.value.code == 0

    def test_load_error(self, tmp_path, config, caplog):
        missing = str(tmp_path / "missing.pcd")
        assert align_script.run([missing, missing], config=config) == 1
        assert "failed to load" in caplog.text

    def test_run(self, tmp_path, config, cloud_paths, capsys):
        output_dir = tmp_path / "out"
        assert align_script.run(list(cloud_paths) + ["--output-dir", str(output_dir)], config=config) == 0

        out = capsys.readouterr().out
        assert "--- pcl_gicp ---" in out
        assert "RESULTS:" in out
        names = ["pcl_gicp", "pclomp_gicp", "pcl_ndt"] + [f"pclomp_ndt_{method}_{n}_threads"
                                                          for n in [1, 2]
                                                          for method in ["KDTREE", "DIRECT7", "DIRECT1"]]
        for name in names:
            for role in ["source", "target", "aligned"]:
                assert (output_dir / f"{name}_{role}.pcd").is_file()

    def test_run_draws_last_result(self, tmp_path, config, cloud_paths, monkeypatch):
        drawn = list()
        monkeypatch.setattr(align_script.utils, "draw_registration_result",
                            lambda **kwargs: drawn.append(kwargs["window_name"]))
        argv = list(cloud_paths) + ["-o", str(tmp_path / "out"), "-d", "-l", "0.2"]
        assert align_script.run(argv, config=config) == 0
        assert drawn == ["pclomp_ndt_DIRECT1_2_threads Registration Result"]

    @pytest.mark.parametrize("argv", [["-x", "a.pcd", "b.pcd"], ["-n", "many", "a.pcd", "b.pcd"]])
    def test_usage_on_malformed_arguments(self, argv, capsys):
        assert align_script.run(argv) == 0
        assert "usage: align target.pcd source.pcd" in capsys.readouterr().out

    def test_help(self, capsys):
        assert align_script.run(["--help"]) == 0
        assert "--fail-fast" in capsys.readouterr().out

    def test_missing_config_file(self, tmp_path, cloud_paths, caplog):
        argv = list(cloud_paths) + ["-c", str(tmp_path / "missing.ini")]
        assert align_script.run(argv) == 1
        assert "Failed to read config" in caplog.text

    def test_read_config_fills_defaults(self, tmp_path):
        path = tmp_path / "partial.ini"
        path.write_text("[benchmark]\nrepeats = 3\n")
        config_dict = align_script.eval_config(align_script.read_config(filename=str(path)))
        assert config_dict["benchmark"]["repeats"] == 3
        assert config_dict["benchmark"]["resolution"] == 1.0
        assert config_dict["data"]["output_dir"] == "pcd"
        assert config_dict["options"]["draw"] is True

    def test_run_with_partial_config(self, tmp_path, cloud_paths):
        path = tmp_path / "partial.ini"
        path.write_text("[benchmark]\n"
                        "repeats = 1\n"
                        "num_threads = [1]\n"
                        "[options]\n"
                        "draw = False\n"
                        "memory_usage = False\n")
        output_dir = tmp_path / "out"
        argv = list(cloud_paths) + ["-c", str(path), "-o", str(output_dir)]
        assert align_script.run(argv) == 0
        assert (output_dir / "pclomp_ndt_KDTREE_1_threads_aligned.pcd").is_file()

    def test_unwritable_output_dir(self, tmp_path, config, cloud_paths, caplog):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        argv = list(cloud_paths) + ["-o", str(blocker / "out")]
        assert align_script.run(argv, config=config) == 0
        assert "failed to save" in caplog.text
