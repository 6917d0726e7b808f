"""
SecondMe chat client.

The provider only exposes a streaming endpoint (server-sent events), so both
calling conventions read the stream:

  send_message         blocking: buffers every fragment, returns the whole text
  send_message_stream  incremental: on_chunk(fragment) per fragment, then the whole text

Everything the provider can send is normalised here into a ChatResult; callers
never look at raw frames.
"""
import json
import logging
import time
from typing import Callable, Iterable, Iterator

import requests
from pydantic import BaseModel

from bossmatch import config
from bossmatch.metrics import chat_latency, chat_errors, stream_frames_skipped

logger = logging.getLogger(__name__)

DONE_SENTINEL = '[DONE]'


class ChatError(Exception):
    pass


class ChatResult(BaseModel):
    ok: bool
    text: str = ''
    session_handle: str | None = None
    error_message: str | None = None


class StreamFrame(BaseModel):
    """One normalised event from the provider stream: a text delta or a session handle."""
    text: str | None = None
    session_handle: str | None = None


def extract_delta(payload) -> str | None:
    """
    Pull the generated-text delta out of one data frame.

    Accepted shapes, first match wins:
      {"choices": [{"delta": {"content": "..."}}]}
      {"content": "..."}
      {"delta": "..."}
    """
    if not isinstance(payload, dict):
        return None

    choices = payload.get('choices')
    if isinstance(choices, list) and choices:
        first = choices[0]
        delta = first.get('delta') if isinstance(first, dict) else None
        if isinstance(delta, dict):
            content = delta.get('content')
            if isinstance(content, str) and content:
                return content

    for key in ('content', 'delta'):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value

    return None


def _frame_data(line: str) -> str | None:
    if not line.startswith('data:'):
        return None
    return line[5:].strip()


def parse_event_stream(lines: Iterable[str]) -> Iterator[StreamFrame]:
    """
    Turn raw SSE lines into StreamFrames.

    `event: session` announces that the next data line carries {"sessionId": ...}.
    Data frames that are not valid JSON are skipped (counted, not fatal).
    Stops at the [DONE] sentinel.
    """
    pending_event = None

    for raw in lines:
        if raw is None:
            continue
        line = raw.strip() if isinstance(raw, str) else raw.decode('utf-8').strip()

        if not line:
            pending_event = None
            continue

        if line.startswith('event:'):
            pending_event = line[6:].strip()
            continue

        data = _frame_data(line)
        if data is None:
            continue

        if pending_event == 'session':
            pending_event = None
            try:
                session_id = json.loads(data).get('sessionId')
            except (ValueError, AttributeError):
                stream_frames_skipped.inc()
                logger.debug(f"Skipping malformed session frame: {data[:100]}")
                continue
            if session_id:
                yield StreamFrame(session_handle=str(session_id))
            continue

        if data == DONE_SENTINEL:
            return

        try:
            payload = json.loads(data)
        except ValueError:
            stream_frames_skipped.inc()
            logger.debug(f"Skipping malformed data frame: {data[:100]}")
            continue

        text = extract_delta(payload)
        if text:
            yield StreamFrame(text=text)


class SecondMeClient:
    def __init__(self, base_url: str = None, timeout: int = None, http=None):
        self.base_url = base_url or config.SECONDME_API_BASE_URL
        self.timeout = timeout or config.SECONDME_TIMEOUT
        self.http = http or requests.Session()

    def close(self) -> None:
        close = getattr(self.http, 'close', None)
        if close:
            close()

    def _open_stream(self, credential: str, message: str, session_handle: str | None,
                     system_instruction: str | None):
        body = {'message': message}
        if session_handle:
            body['sessionId'] = session_handle
        if system_instruction:
            body['systemPrompt'] = system_instruction

        try:
            resp = self.http.post(
                f"{self.base_url}{config.SECONDME_CHAT_STREAM_ENDPOINT}",
                json=body,
                headers={
                    'Authorization': f'Bearer {credential}',
                    'Accept': 'text/event-stream',
                },
                stream=True,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            chat_errors.labels(error_type='transport').inc()
            raise ChatError(f"SecondMe chat request failed: {e}") from e

        if not resp.ok:
            chat_errors.labels(error_type='http').inc()
            detail = (resp.text or '')[:200]
            resp.close()
            raise ChatError(f"HTTP error: {resp.status_code} - {detail}")

        # Business errors come back as a plain JSON envelope instead of a stream
        content_type = resp.headers.get('Content-Type', '')
        if content_type.startswith('application/json'):
            try:
                envelope = resp.json()
            except ValueError:
                envelope = {}
            finally:
                resp.close()
            if envelope.get('code', 0) != 0:
                chat_errors.labels(error_type='provider').inc()
                raise ChatError(envelope.get('message') or f"SecondMe error code {envelope.get('code')}")
            raise ChatError('SecondMe returned JSON instead of an event stream')

        return resp

    def stream_message(self, credential: str, message: str, session_handle: str | None = None,
                       system_instruction: str | None = None, party: str = 'unknown'):
        """
        Generator form of a chat call: yields text fragments as they arrive and
        returns the final ChatResult (StopIteration.value / `yield from`).

        Raises ChatError on transport, HTTP or provider failure, or if the provider
        never assigned a session.
        """
        start = time.time()
        resp = self._open_stream(credential, message, session_handle, system_instruction)

        # Event streams are UTF-8; requests assumes ISO-8859-1 for text/* without a charset
        resp.encoding = 'utf-8'

        parts = []
        handle = session_handle
        try:
            for frame in parse_event_stream(resp.iter_lines(decode_unicode=True)):
                if frame.session_handle:
                    handle = frame.session_handle
                if frame.text:
                    parts.append(frame.text)
                    yield frame.text
        except requests.RequestException as e:
            chat_errors.labels(error_type='transport').inc()
            raise ChatError(f"SecondMe stream interrupted: {e}") from e
        finally:
            resp.close()

        if not handle:
            chat_errors.labels(error_type='no_session').inc()
            raise ChatError('SecondMe did not establish a chat session')

        elapsed = time.time() - start
        chat_latency.labels(party=party).observe(elapsed)
        text = ''.join(parts)
        logger.info(f"SecondMe response for {party}: {len(text)} chars in {elapsed:.1f}s")

        return ChatResult(ok=True, text=text, session_handle=handle)

    def send_message_stream(self, credential: str, message: str, session_handle: str | None = None,
                            system_instruction: str | None = None,
                            on_chunk: Callable[[str], None] | None = None,
                            party: str = 'unknown') -> ChatResult:
        """Incremental convention. on_chunk is only ever called before this returns."""
        stream = self.stream_message(credential, message, session_handle, system_instruction, party)
        try:
            while True:
                try:
                    fragment = next(stream)
                except StopIteration as done:
                    return done.value
                if on_chunk:
                    on_chunk(fragment)
        except ChatError as e:
            logger.error(f"SecondMe chat failed for {party}: {e}")
            return ChatResult(ok=False, session_handle=session_handle, error_message=str(e))

    def send_message(self, credential: str, message: str, session_handle: str | None = None,
                     system_instruction: str | None = None, party: str = 'unknown') -> ChatResult:
        """Blocking convention: the whole buffered response, or ok=False with error_message."""
        return self.send_message_stream(
            credential, message, session_handle, system_instruction, on_chunk=None, party=party,
        )
