from diag import diag_full_pipeline, diag_runtime_invariants, diag_scoring_weights


def test_scoring_weights_diagnostic(capsys):
    diag_scoring_weights.run()
    assert "SCORING DIAGNOSTIC PASSED" in capsys.readouterr().out


def test_runtime_invariants_diagnostic(capsys):
    diag_runtime_invariants.run()
    assert "ALL RUNTIME INVARIANTS PASSED" in capsys.readouterr().out


def test_full_pipeline_diagnostic(capsys):
    diag_full_pipeline.run()
    out = capsys.readouterr().out
    assert "FULL PIPELINE DIAGNOSTIC PASSED" in out
    assert out.count("confidence=") == 3
