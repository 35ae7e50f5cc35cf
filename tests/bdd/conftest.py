"""
Shared fixtures and step definitions for BDD tests.

- runner, mock_crm, context: available to all scenario files in this directory
- no_logging: autouse, keeps scenarios from writing log files
- 'the output contains' step: shared across all feature files
"""

import pytest
from unittest.mock import MagicMock, patch
from click.testing import CliRunner
from pytest_bdd import then, parsers


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def mock_crm():
    """One mock standing in for the crm module everywhere the CLI reaches it."""
    mock = MagicMock()
    with patch("xenocrm.cli.main.crm", mock), \
         patch("xenocrm.engine.segmentation.crm", mock), \
         patch("xenocrm.engine.campaigns.crm", mock):
        yield mock


@pytest.fixture
def context():
    """Mutable dict shared between Given/When/Then steps within a scenario."""
    return {}


@pytest.fixture(autouse=True)
def no_logging():
    with patch("xenocrm.cli.main.configure_logging"):
        yield


@then(parsers.parse('the output contains "{text}"'))
def output_contains(context, text):
    assert text in context["result"].output, (
        f"Expected {text!r} in output:\n{context['result'].output}"
    )


@then(parsers.parse('the output does not contain "{text}"'))
def output_does_not_contain(context, text):
    assert text not in context["result"].output, (
        f"Did not expect {text!r} in output:\n{context['result'].output}"
    )
