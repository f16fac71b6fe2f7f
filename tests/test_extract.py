import asyncio
import base64
import dataclasses

import httpx
import pytest

from decoder.errors import ConfigurationError, DecoderError, ProviderError, ProviderTimeout, ValidationError
from decoder.extract import ExtractCache, cache_key, extract_text, lines_from_result
from decoder.schemas import ExtractRequest

PAYLOAD = base64.b64encode(b"%PDF-1.4 fake").decode()
OPERATION = "https://di.example.net/operations/1"

V3_RESULT = {
    "status": "succeeded",
    "analyzeResult": {"pages": [{"lines": [{"content": "A mass of 2 kg"}, {"content": "Find a."}]}]},
}
V2_RESULT = {
    "status": "succeeded",
    "analyzeResult": {"readResults": [{"lines": [{"text": "page one"}]}, {"lines": [{"text": "page two"}]}]},
}


@pytest.fixture()
def di_settings(settings):
    return dataclasses.replace(settings, docintel_endpoint="https://di.example.net", docintel_key="di_key")


class FakeDocIntel:
    """Answers submits by URL shape and serves the poll responses in order."""

    def __init__(self, rejected=(), polls=(V3_RESULT,)):
        self.rejected = rejected
        self.polls = list(polls)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        url = str(request.url)
        if request.method == "GET":
            return httpx.Response(200, json=self.polls.pop(0))
        if any(marker in url for marker in self.rejected):
            return httpx.Response(404, text=f"no route {request.url.path}")
        return httpx.Response(202, headers={"Operation-Location": OPERATION})

    def transport(self):
        return httpx.MockTransport(self)


def _extract(settings, fake, cache=None, **kwargs):
    request = ExtractRequest.model_validate({"fileBase64": PAYLOAD, "mimeType": "application/pdf"})
    return asyncio.run(extract_text(
        settings, request, transport=fake.transport(), cache=cache or ExtractCache(), poll_interval=0, **kwargs,
    ))


def test_newest_api_first_and_polls_until_done(di_settings):
    fake = FakeDocIntel(polls=[{"status": "running"}, V3_RESULT])
    response = _extract(di_settings, fake)
    assert response.text == "A mass of 2 kg\nFind a."
    assert response.pages == 1
    assert response.cached is None
    submit = fake.requests[0]
    assert "/documentintelligence/" in submit.url.path
    assert submit.headers["Ocp-Apim-Subscription-Key"] == "di_key"
    assert submit.content == b"%PDF-1.4 fake"
    assert [r.method for r in fake.requests] == ["POST", "GET", "GET"]


def test_repeat_upload_is_served_from_cache(di_settings):
    cache = ExtractCache()
    fake = FakeDocIntel()
    _extract(di_settings, fake, cache=cache)
    again = _extract(di_settings, fake, cache=cache)
    assert again.cached is True
    assert again.text == "A mass of 2 kg\nFind a."
    assert len(fake.requests) == 2


def test_legacy_layout_is_the_last_resort(di_settings):
    fake = FakeDocIntel(rejected=("documentintelligence", "prebuilt-read"), polls=[V2_RESULT])
    response = _extract(di_settings, fake)
    assert response.text == "page one\npage two"
    assert response.pages == 2
    legacy = fake.requests[2]
    assert legacy.url.path == "/formrecognizer/v2.1/layout/analyze"
    assert legacy.headers["Content-Type"] == "application/pdf"


def test_every_submit_rejected_is_404(di_settings):
    fake = FakeDocIntel(rejected=("analyze",))
    with pytest.raises(DecoderError) as exc:
        _extract(di_settings, fake)
    assert exc.value.status_code == 404
    assert exc.value.message == "analyze submit failed"


def test_failed_analysis_is_502(di_settings):
    with pytest.raises(ProviderError) as exc:
        _extract(di_settings, FakeDocIntel(polls=[{"status": "failed"}]))
    assert exc.value.status_code == 502


def test_analysis_that_never_settles_times_out(di_settings):
    with pytest.raises(ProviderTimeout):
        _extract(di_settings, FakeDocIntel(), max_wait=0)


def test_input_and_config_errors(settings, di_settings):
    with pytest.raises(ValidationError):
        asyncio.run(extract_text(di_settings, ExtractRequest(file_base64=PAYLOAD)))
    with pytest.raises(ValidationError):
        asyncio.run(extract_text(di_settings, ExtractRequest(file_base64="not base64!", mime_type="image/png")))
    with pytest.raises(ConfigurationError):
        asyncio.run(extract_text(settings, ExtractRequest(file_base64=PAYLOAD, mime_type="image/png")))


def test_cache_expires_after_ttl():
    cache = ExtractCache(ttl=300)
    key = cache_key("image/png", PAYLOAD)
    cache.put(key, "text", 1, now=0)
    assert cache.get(key, now=299) == ("text", 1)
    assert cache.get(key, now=300) is None
    assert cache_key("image/png", PAYLOAD) != cache_key("image/jpeg", PAYLOAD)


def test_unknown_result_shape_is_empty():
    assert lines_from_result({"status": "succeeded"}) == ("", 0)
