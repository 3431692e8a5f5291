import allure
from click.testing import CliRunner

from spider_queue import __version__
from spider_queue.main import spider_queue

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Operator CLI"),
]


def test_version():
    assert __version__


def test_version_option():
    runner = CliRunner()
    result = runner.invoke(spider_queue, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output
