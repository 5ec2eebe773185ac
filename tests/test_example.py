from therxos import example


def test_example_prints_report(capsys):
    example.main()
    out = capsys.readouterr().out
    assert "[Report] Loaded 8 claims (1 rejected, 3 data-quality issues)" in out
    assert "[Report] Scan created 4 opportunities:" in out
    assert "SMITH, JOHN: PRAVASTATIN SODIUM 40MG TAB -> ROSUVASTATIN CALCIUM 10MG TAB" in out
    assert "[Report] Audit rules flagged 1 claims" in out
    assert "[critical] OZEMPIC 1MG/DOSE PEN" in out
