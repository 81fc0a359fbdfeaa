from click.testing import CliRunner

from manage import preview_tickets, upload_template


def test_upload_template_help_lists_font_families():
    result = CliRunner().invoke(upload_template, ["--help"])
    assert result.exit_code == 0
    assert "Helvetica, Times Roman, Courier" in " ".join(result.output.split())


def test_preview_tickets_requires_placement():
    result = CliRunner().invoke(preview_tickets, ["--event", "1"])
    assert result.exit_code == 2
    assert "--x" in result.output
