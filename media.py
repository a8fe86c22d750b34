"""Media ingestion: turn an inbound event into a text prompt.

Voice notes are transcribed, images are saved for the backend to read, and
videos are reduced to a few still frames plus an audio transcript. Files the
backend has to read stay on disk until the request completes; they travel
with the request as cleanup paths.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path

from channels import InboundEvent, MessageKind
from dispatcher import NormalizedRequest, remove_paths
from errors import MediaDownloadFailure, SubprocessTimeout, ToolError, TranscriptionFailure
from lifecycle import SessionSlot
from runner import run_checked
from transcribe import WhisperTranscriber

log = logging.getLogger(__name__)

VOICE_FAILED_MESSAGE = "Could not understand the voice note. Please try again or type your message."

IMAGE_UNAVAILABLE = "[Image sent but could not be downloaded]"
VIDEO_UNAVAILABLE = "[Video sent but could not be processed]"

# Smaller downloads are treated as failed (empty or truncated voice notes)
MIN_VOICE_BYTES = 100
# An extracted audio track this small is silence or a header only
MIN_AUDIO_TRACK_BYTES = 1000

MAX_FRAMES = 4
_FRAME_SELECT = r"select='eq(n\,0)+eq(n\,30)+eq(n\,60)+eq(n\,90)',setpts=N/FRAME_RATE/TB"
_FRAME_FALLBACK = "fps=1/2"

# Failures from an external tool run
_TOOL_ERRORS = (ToolError, SubprocessTimeout, OSError)


def _with_caption(prefix: str, caption: str) -> str:
    return f"{prefix} Caption: {caption}" if caption else prefix


class MediaPipeline:
    def __init__(
        self,
        media_dir: Path,
        transcriber: WhisperTranscriber,
        ffmpeg: str = "ffmpeg",
        timeout: float = 30,
    ):
        self.media_dir = Path(media_dir).resolve()
        self.transcriber = transcriber
        self.ffmpeg = ffmpeg
        self.timeout = timeout

    def _stamp(self) -> int:
        return time.time_ns()

    async def normalize(self, event: InboundEvent,
                        slot: SessionSlot) -> NormalizedRequest | None:
        """Build the request for an event; None when there is nothing to ask.

        Raises TranscriptionFailure for voice notes that yield no text.
        """
        if event.kind is MessageKind.TEXT:
            if not event.text:
                return None
            return self._request(event, event.text)

        if event.kind is MessageKind.AUDIO:
            log.info("Voice note received, transcribing...")
            text = await self._voice(event, slot)
            log.info("Transcription: %s...", text[:80])
            return self._request(event, f"[Voice note] {text}", was_voice=True)
        if event.kind is MessageKind.IMAGE:
            log.info("Image received, downloading...")
            return await self._image(event, slot)
        if event.kind is MessageKind.VIDEO:
            log.info("Video received, downloading...")
            return await self._video(event, slot)
        return None

    def _request(self, event: InboundEvent, prompt: str, was_voice: bool = False,
                 cleanup: list[Path] | None = None) -> NormalizedRequest:
        return NormalizedRequest(
            chat_id=event.chat_id,
            prompt_text=prompt,
            from_self=event.from_self,
            was_voice=was_voice,
            cleanup_paths=cleanup or [],
        )

    async def _download(self, event: InboundEvent, slot: SessionSlot) -> bytes:
        try:
            data = await slot.current.download_media(event)
        except Exception as e:
            raise MediaDownloadFailure(str(e)) from e
        if not data:
            raise MediaDownloadFailure("empty media payload")
        return data

    async def _ffmpeg(self, *args: str | Path) -> None:
        await run_checked([self.ffmpeg, *map(str, args)], timeout=self.timeout)

    # ─── Voice ───────────────────────────────────────────────────

    async def _voice(self, event: InboundEvent, slot: SessionSlot) -> str:
        stamp = self._stamp()
        raw = self.media_dir / f"{stamp}.ogg"
        wav = self.media_dir / f"{stamp}.wav"
        try:
            try:
                data = await self._download(event, slot)
            except MediaDownloadFailure as e:
                raise TranscriptionFailure(f"download failed: {e}") from e
            try:
                self.media_dir.mkdir(parents=True, exist_ok=True)
                raw.write_bytes(data)
            except OSError as e:
                raise TranscriptionFailure(f"could not store audio: {e}") from e
            log.info("Audio downloaded: %d bytes", len(data))
            if len(data) < MIN_VOICE_BYTES:
                raise TranscriptionFailure(f"Downloaded audio too small: {len(data)} bytes")
            try:
                await self._ffmpeg("-i", raw, "-ar", "16000", "-ac", "1", wav, "-y")
                text = await self.transcriber.transcribe(wav)
            except _TOOL_ERRORS as e:
                raise TranscriptionFailure(str(e)) from e
            if not text:
                raise TranscriptionFailure("empty transcript")
            return text
        finally:
            remove_paths([raw, wav])

    # ─── Image ───────────────────────────────────────────────────

    async def _image(self, event: InboundEvent, slot: SessionSlot) -> NormalizedRequest:
        caption = event.text
        path = self.media_dir / f"img_{self._stamp()}.jpg"
        try:
            data = await self._download(event, slot)
            self.media_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except (MediaDownloadFailure, OSError) as e:
            log.warning("Image download error: %s", e)
            remove_paths([path])
            return self._request(event, _with_caption(IMAGE_UNAVAILABLE, caption))

        prompt = f"[Image at: {path}] Read the image with your Read tool and analyze it. "
        prompt += f"Caption: {caption}" if caption else "No caption provided, describe what you see."
        return self._request(event, prompt, cleanup=[path])

    # ─── Video ───────────────────────────────────────────────────

    async def _extract_frames(self, video: Path, frames_dir: Path) -> list[Path]:
        frames_dir.mkdir(parents=True, exist_ok=True)
        pattern = frames_dir / "frame_%02d.jpg"
        for vf in (_FRAME_SELECT, _FRAME_FALLBACK):
            try:
                await self._ffmpeg("-i", video, "-vf", vf, "-frames:v", str(MAX_FRAMES),
                                   pattern, "-y")
            except _TOOL_ERRORS as e:
                log.warning("Frame extraction (%s) failed: %s", vf.split("=", 1)[0], e)
                continue
            frames = sorted(frames_dir.glob("frame_*.jpg"))
            if frames:
                return frames
        return []

    async def _video_transcript(self, video: Path, wav: Path) -> str:
        try:
            await self._ffmpeg("-i", video, "-vn", "-ar", "16000", "-ac", "1", wav, "-y")
            if wav.stat().st_size <= MIN_AUDIO_TRACK_BYTES:
                return ""
            return await self.transcriber.transcribe(wav)
        except _TOOL_ERRORS as e:
            log.info("Video audio extraction: %s", e)
            return ""

    async def _video(self, event: InboundEvent, slot: SessionSlot) -> NormalizedRequest:
        caption = event.text
        stamp = self._stamp()
        video = self.media_dir / f"vid_{stamp}.mp4"
        frames_dir = self.media_dir / f"frames_{stamp}"
        wav = self.media_dir / f"vid_audio_{stamp}.wav"

        try:
            data = await self._download(event, slot)
        except MediaDownloadFailure as e:
            log.warning("Video download error: %s", e)
            return self._request(event, _with_caption(VIDEO_UNAVAILABLE, caption))

        cleanup = [video, wav, frames_dir]
        try:
            self.media_dir.mkdir(parents=True, exist_ok=True)
            video.write_bytes(data)
            log.info("Video downloaded: %d bytes", len(data))
            frames = await self._extract_frames(video, frames_dir)
            transcript = await self._video_transcript(video, wav)
        except OSError as e:
            log.error("Video processing error: %s", e)
            remove_paths(cleanup)
            return self._request(event, _with_caption(VIDEO_UNAVAILABLE, caption))

        parts = []
        if frames:
            listing = "\n".join(f"Frame {i}: {p}" for i, p in enumerate(frames, 1))
            parts.append(f"[Video frames]\n{listing}\nRead each frame with your Read tool.")
        if transcript:
            log.info("Video audio transcribed: %s...", transcript[:80])
            parts.append(f"[Video audio transcription] {transcript}")
        if caption:
            parts.append(f"Caption: {caption}")

        cleanup = frames + cleanup
        if not parts:
            return self._request(event, VIDEO_UNAVAILABLE, cleanup=cleanup)
        prompt = "\n".join(parts) + "\nAnalyze both the visual frames and audio content of this video."
        return self._request(event, prompt, cleanup=cleanup)
