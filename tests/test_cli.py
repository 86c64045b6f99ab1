import numpy as np

import run

from conftest import basis


def test_add_enroll_list_and_delete(tmp_path, capsys):
    db_path = tmp_path / "cli.db"
    embedding_path = tmp_path / "carol.npy"
    np.save(embedding_path, np.concatenate([basis(0), np.zeros(504)]))

    assert run.main(["--db", str(db_path), "add-identity", "--id", "Carol@Example.com", "--name", "Carol"]) == 0
    assert run.main(["--db", str(db_path), "enroll", "--id", "carol@example.com", "--embedding", str(embedding_path)]) == 0
    assert run.main(["--db", str(db_path), "list-identities"]) == 0
    assert "carol@example.com" in capsys.readouterr().out

    assert run.main(["--db", str(db_path), "delete", "--id", "carol@example.com"]) == 1
    assert "confirm" in capsys.readouterr().out
    assert run.main(["--db", str(db_path), "delete", "--id", "carol@example.com", "--yes"]) == 0


def test_errors_become_exit_code_one(tmp_path, capsys):
    db_path = tmp_path / "cli.db"

    assert run.main(["--db", str(db_path), "add-identity", "--id", "  ", "--name", "Nobody"]) == 1
    assert "Error:" in capsys.readouterr().out


def test_report_on_empty_database(tmp_path, capsys):
    assert run.main(["--db", str(tmp_path / "cli.db"), "report", "--from", "2024-03-01", "--to", "2024-03-02"]) == 0
    assert "0 event(s)" in capsys.readouterr().out
