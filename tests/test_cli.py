import json
from pathlib import Path

import sys
import pytest

SRC_DIR = Path(__file__).resolve().parents[1] / "src"
sys.path.insert(0, str(SRC_DIR))

from pack_taxonomy.cli import main


def _pack_file(tmp_path: Path, records) -> Path:
    path = tmp_path / "packs.json"
    path.write_text(json.dumps(records), encoding="utf-8")
    return path


@pytest.fixture
def pack_file(tmp_path):
    return _pack_file(
        tmp_path,
        [
            {
                "id": "p1",
                "name": "Hardstyle Euphoria",
                "totalFiles": 40,
                "internalStructure": {"detectedTypes": {"KICKS": {"fileCount": 40, "paths": ["Kicks"]}}},
            },
            {"id": "p2", "name": "Random Sounds", "totalFiles": 5},
        ],
    )


def _run(capsys, argv):
    code = main(argv)
    out = capsys.readouterr().out
    return code, out


def test_classify_prints_json_report(capsys, tmp_path, pack_file):
    code, out = _run(capsys, ["classify", str(pack_file), "--config-dir", str(tmp_path / "cfg"), "--no-ai"])
    report = json.loads(out)

    assert code == 0
    assert report["steps"] == ["classify"]
    statuses = {e["pack_id"]: e["status"] for e in report["packs"]}
    assert statuses == {"p1": "classified", "p2": "quarantined"}


def test_run_writes_output_file(capsys, tmp_path, pack_file):
    output = tmp_path / "report.json"
    code, out = _run(
        capsys,
        ["run", str(pack_file), "--config-dir", str(tmp_path / "cfg"), "--no-ai", "--output", str(output)],
    )
    assert code == 0
    assert out == ""
    report = json.loads(output.read_text(encoding="utf-8"))
    assert report["proposals"]["recommendation"]["recommended_id"] in ("taxonomic", "type_first", "adaptive")


def test_custom_taxonomy_option(capsys, tmp_path):
    taxonomy = tmp_path / "taxonomy.json"
    taxonomy.write_text(
        json.dumps({"families": [{"name": "Lofi", "styles": ["Chillhop"], "keywords": ["lofi"]}]}),
        encoding="utf-8",
    )
    packs = _pack_file(tmp_path, [{"id": "l", "name": "Lofi Dreams"}])
    code, out = _run(
        capsys,
        ["classify", str(packs), "--taxonomy", str(taxonomy), "--config-dir", str(tmp_path / "cfg"), "--no-ai"],
    )
    report = json.loads(out)
    assert code == 0
    assert report["packs"][0]["classification"]["family"] == "Lofi"


def test_step_errors_give_exit_code_2(capsys, tmp_path):
    packs = _pack_file(tmp_path, [{"id": "x", "name": "Random Sounds"}])
    code, out = _run(capsys, ["propose", str(packs), "--config-dir", str(tmp_path / "cfg"), "--no-ai"])
    assert code == 2
    assert json.loads(out)["errors"]


def test_missing_pack_file_gives_exit_code_1(capsys, tmp_path):
    code = main(["classify", str(tmp_path / "nope.json"), "--config-dir", str(tmp_path / "cfg")])
    assert code == 1
    assert "Error:" in capsys.readouterr().err


def test_command_is_required():
    with pytest.raises(SystemExit):
        main([])
