from run_reconstruction import run_reconstruction


def test_requires_input_and_output(monkeypatch, capsys):
    monkeypatch.delenv("INPUT_FILE", raising=False)
    monkeypatch.delenv("OUTPUT_FILE", raising=False)
    assert run_reconstruction() is None
    assert "INPUT_FILE" in capsys.readouterr().out

    monkeypatch.setenv("INPUT_FILE", "scan.ply")
    assert run_reconstruction() is None
    assert "OUTPUT_FILE" in capsys.readouterr().out


def test_missing_input_file(monkeypatch, tmp_path, capsys):
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.setenv("INPUT_FILE", "missing.ply")
    monkeypatch.setenv("OUTPUT_FILE", "mesh.ply")
    assert run_reconstruction() is None
    assert "Input file not found" in capsys.readouterr().out
