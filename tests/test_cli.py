import pytest

from cli import main


@pytest.fixture
def write_csv(tmp_path):
    def _write(*rows):
        path = tmp_path / "transactions.csv"
        path.write_text("\n".join(("type, client, tx, amount",) + rows))
        return str(path)
    return _write


class TestCli:
    """Test the ledger-engine command."""

    @pytest.mark.parametrize("backend", ["memory", "rescan"])
    def test_prints_account_table(self, write_csv, capsys, backend):
        path = write_csv(
            "deposit, 2, 1, 10",
            "deposit, 1, 2, 1",
            "dispute, 2, 1,",
            "withdrawal, 1, 3, 0.5",
        )

        assert main([path, "--index", backend, "--log-level", "WARNING"]) == 0

        out = capsys.readouterr().out
        assert out.splitlines() == [
            "client,available,held,total,locked",
            "1,0.5000,0.0000,0.5000,false",
            "2,0.0000,10.0000,10.0000,false",
        ]

    def test_locked_rendered_lowercase(self, write_csv, capsys):
        path = write_csv("deposit, 1, 1, 3", "dispute, 1, 1,", "chargeback, 1, 1,")

        assert main([path, "--log-level", "WARNING"]) == 0

        assert capsys.readouterr().out.splitlines()[1] == "1,0.0000,0.0000,0.0000,true"

    def test_parse_error_exits_without_table(self, write_csv, capsys):
        path = write_csv("deposit, 1, 1, 3", "deposit, x, 2, 1")

        assert main([path, "--log-level", "WARNING"]) == 2

        captured = capsys.readouterr()
        assert captured.out == ""
        assert "line 3" in captured.err

    def test_missing_file(self, tmp_path, capsys):
        assert main([str(tmp_path / "absent.csv"), "--log-level", "WARNING"]) == 1

        captured = capsys.readouterr()
        assert captured.out == ""
        assert "no such file" in captured.err

    def test_oversized_amounts_rejected_cleanly(self, write_csv, capsys):
        path = write_csv(
            "deposit, 1, 1, 900000000000000000000000",
            "deposit, 1, 2, 900000000000000000000000",
        )

        assert main([path, "--log-level", "WARNING"]) == 2

        captured = capsys.readouterr()
        assert captured.out == ""
        assert "line 2" in captured.err

    def test_largest_amounts_sum_without_overflow(self, write_csv, capsys):
        path = write_csv(
            "deposit, 1, 1, 99999999999999.9999",
            "deposit, 1, 2, 99999999999999.9999",
            "deposit, 1, 3, 99999999999999.9999",
        )

        assert main([path, "--log-level", "WARNING"]) == 0

        assert capsys.readouterr().out.splitlines()[1] == (
            "1,299999999999999.9997,0.0000,299999999999999.9997,false"
        )

    def test_negative_amount_rejected(self, write_csv, capsys):
        path = write_csv("deposit, 1, 1, -5", "dispute, 1, 1,")

        assert main([path, "--log-level", "WARNING"]) == 2

        captured = capsys.readouterr()
        assert captured.out == ""
        assert "line 2" in captured.err
