import allure
from click.testing import CliRunner

from agent_supervisor import __version__
from agent_supervisor.main import agent_supervisor

pytestmark = [
    allure.epic("Supervisor"),
    allure.feature("CLI"),
]


def test_version():
    assert __version__


def test_version_option():
    runner = CliRunner()
    result = runner.invoke(agent_supervisor, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output
