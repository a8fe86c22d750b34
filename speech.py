"""Text-to-speech via ElevenLabs, transcoded to a WhatsApp voice note.

Optional: only used when an API key and voice id are configured.
"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path

import httpx

from errors import SpeechSynthesisError, SubprocessTimeout, ToolError
from runner import run_checked

log = logging.getLogger(__name__)

_API_URL = "https://api.elevenlabs.io/v1/text-to-speech/{voice_id}"


class ElevenLabsSynthesizer:
    def __init__(
        self,
        api_key: str,
        voice_id: str,
        output_dir: Path,
        model_id: str = "eleven_multilingual_v2",
        stability: float = 0.5,
        similarity_boost: float = 0.75,
        ffmpeg: str = "ffmpeg",
        timeout: float = 60,
        transcode_timeout: float = 30,
        api_url: str = _API_URL,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.voice_id = voice_id
        self.output_dir = Path(output_dir)
        self.model_id = model_id
        self.stability = stability
        self.similarity_boost = similarity_boost
        self.ffmpeg = ffmpeg
        self.timeout = timeout
        self.transcode_timeout = transcode_timeout
        self.api_url = api_url
        self._http_transport = http_transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.voice_id)

    async def _fetch_mp3(self, text: str) -> bytes:
        url = self.api_url.format(voice_id=self.voice_id)
        payload = {
            "text": text,
            "model_id": self.model_id,
            "voice_settings": {
                "stability": self.stability,
                "similarity_boost": self.similarity_boost,
            },
        }
        headers = {
            "Content-Type": "application/json",
            "xi-api-key": self.api_key,
            "Accept": "audio/mpeg",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout,
                                         transport=self._http_transport) as client:
                resp = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise SpeechSynthesisError(f"ElevenLabs request failed: {e}") from e
        if resp.status_code != 200:
            raise SpeechSynthesisError(f"ElevenLabs API {resp.status_code}: {resp.text}")
        return resp.content

    async def synthesize(self, text: str) -> Path:
        """Return the path of an OGG/Opus voice note; caller removes it."""
        if not self.configured:
            raise SpeechSynthesisError("ElevenLabs not configured")

        self.output_dir.mkdir(parents=True, exist_ok=True)
        stamp = time.time_ns()
        mp3_path = self.output_dir / f"tts_{stamp}.mp3"
        ogg_path = self.output_dir / f"tts_{stamp}.ogg"

        audio = await self._fetch_mp3(text)
        mp3_path.write_bytes(audio)
        try:
            await run_checked(
                [self.ffmpeg, "-i", str(mp3_path), "-c:a", "libopus", "-b:a", "64k",
                 str(ogg_path), "-y"],
                timeout=self.transcode_timeout,
            )
        except (ToolError, SubprocessTimeout, OSError) as e:
            ogg_path.unlink(missing_ok=True)
            raise SpeechSynthesisError(f"ffmpeg conversion failed: {e}") from e
        finally:
            try:
                os.unlink(mp3_path)
            except OSError:
                pass
        return ogg_path
