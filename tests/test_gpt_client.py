import dataclasses

from decoder import gpt_client
from decoder.gpt_client import get_chat_client


def test_client_is_reused_for_the_same_settings(settings):
    assert get_chat_client(settings) is get_chat_client(settings)


def test_client_is_replaced_when_settings_change(settings):
    first = get_chat_client(settings)
    changed = dataclasses.replace(settings, deployment="other")
    second = get_chat_client(changed)
    assert second is not first
    assert second.primary_deployment == "other"
    assert gpt_client._client is second
    assert gpt_client._client_settings == changed
