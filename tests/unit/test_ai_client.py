"""
Unit tests for xenocrm/engine/ai_client.py.

DeepSeek calls are intercepted at xenocrm.engine.ai_client.requests.post,
Claude calls at xenocrm.engine.ai_client.Anthropic.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import requests

from xenocrm.engine.ai_client import AIClient, CLAUDE_MODEL


def deepseek_response(content):
    resp = MagicMock()
    resp.json.return_value = {'choices': [{'message': {'content': content}}]}
    return resp


def test_unknown_model_rejected():
    with pytest.raises(ValueError, match='Unknown AI model'):
        AIClient(model='gpt-2')


def test_from_config_reads_settings():
    cfg = SimpleNamespace(
        DEFAULT_AI_MODEL='deepseek-reasoner', DEEPSEEK_API_KEY='ds-key',
        DEEPSEEK_BASE_URL='https://ds.example.com/', ANTHROPIC_API_KEY='an-key', AI_TIMEOUT_SECONDS=7.0,
    )
    client = AIClient.from_config(cfg)
    assert client.model == 'deepseek-reasoner'
    assert client.deepseek_base_url == 'https://ds.example.com'
    assert client.timeout == 7.0
    assert AIClient.from_config(cfg, model='claude').model == 'claude'


class TestDeepSeek:

    def test_posts_chat_completion(self):
        client = AIClient(model='deepseek-chat', deepseek_api_key='k', timeout=3)
        with patch('xenocrm.engine.ai_client.requests.post', return_value=deepseek_response('hello')) as mock_post:
            assert client.complete('prompt', system='sys', max_tokens=50) == 'hello'

        url = mock_post.call_args[0][0]
        kwargs = mock_post.call_args[1]
        assert url == 'https://api.deepseek.com/chat/completions'
        assert kwargs['json']['model'] == 'deepseek-chat'
        assert kwargs['json']['max_tokens'] == 50
        assert kwargs['json']['messages'] == [
            {'role': 'system', 'content': 'sys'},
            {'role': 'user', 'content': 'prompt'},
        ]
        assert kwargs['headers']['Authorization'] == 'Bearer k'
        assert kwargs['timeout'] == 3

    def test_no_system_message_when_not_given(self):
        client = AIClient(deepseek_api_key='k')
        with patch('xenocrm.engine.ai_client.requests.post', return_value=deepseek_response('x')) as mock_post:
            client.complete('prompt')
        assert mock_post.call_args[1]['json']['messages'] == [{'role': 'user', 'content': 'prompt'}]

    def test_missing_key_raises_value_error(self):
        with patch('xenocrm.engine.ai_client.requests.post') as mock_post:
            with pytest.raises(ValueError, match='DEEPSEEK_API_KEY'):
                AIClient(deepseek_api_key='').complete('prompt')
        mock_post.assert_not_called()

    def test_timeout_raises_runtime_error(self):
        with patch('xenocrm.engine.ai_client.requests.post', side_effect=requests.exceptions.Timeout('slow')):
            with pytest.raises(RuntimeError, match='DeepSeek'):
                AIClient(deepseek_api_key='k').complete('prompt')

    def test_unexpected_shape_raises_runtime_error(self):
        resp = MagicMock()
        resp.json.return_value = {'choices': []}
        with patch('xenocrm.engine.ai_client.requests.post', return_value=resp):
            with pytest.raises(RuntimeError, match='Unexpected'):
                AIClient(deepseek_api_key='k').complete('prompt')


class TestClaude:

    def test_calls_messages_api(self):
        client = AIClient(model='claude', anthropic_api_key='an', timeout=4)
        with patch('xenocrm.engine.ai_client.Anthropic') as mock_cls:
            mock_cls.return_value.messages.create.return_value = SimpleNamespace(
                content=[SimpleNamespace(text='claude says hi')]
            )
            assert client.complete('prompt', system='sys', max_tokens=20) == 'claude says hi'

        mock_cls.assert_called_once_with(api_key='an', timeout=4)
        kwargs = mock_cls.return_value.messages.create.call_args[1]
        assert kwargs['model'] == CLAUDE_MODEL
        assert kwargs['system'] == 'sys'
        assert kwargs['max_tokens'] == 20
        assert kwargs['messages'] == [{'role': 'user', 'content': 'prompt'}]

    def test_missing_key_raises_value_error(self):
        with pytest.raises(ValueError, match='ANTHROPIC_API_KEY'):
            AIClient(model='claude', anthropic_api_key='').complete('prompt')

    def test_api_error_raises_runtime_error(self):
        with patch('xenocrm.engine.ai_client.Anthropic') as mock_cls:
            mock_cls.return_value.messages.create.side_effect = Exception('overloaded')
            with pytest.raises(RuntimeError, match='Claude'):
                AIClient(model='claude', anthropic_api_key='an').complete('prompt')
