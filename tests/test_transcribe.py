#!/usr/bin/env python3
"""
Tests for Deepgram transcription with key rotation.
"""

import sys
import tempfile
from pathlib import Path
from unittest import mock

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

import requests

from voiceqc.core.constants import ErrorCode, ProgressStage, Provider
from voiceqc.core.db_sqlite import Database
from voiceqc.core.error_codes import (
    JobError, NoActiveCredentialError, PermanentProviderError, TransientProviderError,
)
from voiceqc.core.key_pool import ProviderKeyPool
from voiceqc.core.progress import ProgressReporter
from voiceqc.core.transcribe_deepgram import (
    extract_detected_language, extract_speaker_segments, extract_transcript_text,
    transcribe_audio, transcribe_dialog,
)

SAMPLE_RESPONSE = {
    "metadata": {"duration": 12.5, "model_info": {"language": "en"}},
    "results": {
        "channels": [{
            "detected_language": "en",
            "alternatives": [{"transcript": "Hello. How can I help you?"}],
        }],
        "utterances": [
            {"speaker": 0, "transcript": "Hello.", "confidence": 0.98, "start": 0.0, "end": 1.1},
            {"speaker": 1, "transcript": "How can I help you?", "confidence": 0.91,
             "start": 1.3, "end": 3.0},
        ],
    },
}


def _response(status=200, json_data=None, text=""):
    resp = mock.Mock()
    resp.status_code = status
    resp.text = text
    if json_data is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = json_data
    return resp


class TestExtraction(unittest.TestCase):

    def test_transcript_text(self):
        self.assertEqual(extract_transcript_text(SAMPLE_RESPONSE), "Hello. How can I help you?")

    def test_transcript_prefers_paragraphs(self):
        response = {"results": {"channels": [{"alternatives": [{
            "transcript": "flat",
            "paragraphs": {"paragraphs": [
                {"sentences": [{"text": "One."}, {"text": "Two."}]},
                {"sentences": [{"text": "Three."}]},
            ]},
        }]}]}}
        self.assertEqual(extract_transcript_text(response), "One. Two.\n\nThree.")

    def test_transcript_empty_response(self):
        self.assertEqual(extract_transcript_text({}), "")

    def test_speaker_segments(self):
        segments = extract_speaker_segments(SAMPLE_RESPONSE)
        self.assertEqual([s.speaker for s in segments], ["Speaker 0", "Speaker 1"])
        self.assertEqual(segments[1].text, "How can I help you?")
        self.assertAlmostEqual(segments[1].start, 1.3)

    def test_missing_speaker_defaults_to_zero(self):
        response = {"results": {"utterances": [{"transcript": "hi"}]}}
        self.assertEqual(extract_speaker_segments(response)[0].speaker, "Speaker 0")

    def test_no_utterances(self):
        self.assertEqual(extract_speaker_segments({"results": {}}), [])

    def test_detected_language(self):
        self.assertEqual(extract_detected_language(SAMPLE_RESPONSE), "en")
        fallback = {"results": {"channels": [{}]}, "metadata": {"model_info": {"language": "ru"}}}
        self.assertEqual(extract_detected_language(fallback), "ru")
        self.assertIsNone(extract_detected_language({}))


class DeepgramTestCase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        root = Path(self.tmpdir.name)
        self.db = Database(root / "dg.db")
        self.pool = ProviderKeyPool(self.db)
        self.audio = root / "call.wav"
        self.audio.write_bytes(b"RIFF0000WAVE")

    def tearDown(self):
        self.db.close()
        self.tmpdir.cleanup()


class TestTranscribeAudio(DeepgramTestCase):

    @mock.patch("voiceqc.core.transcribe_deepgram.requests.post")
    def test_success(self, mock_post):
        key = self.pool.add("dg", "dg-secret-key-1", Provider.DEEPGRAM)
        mock_post.return_value = _response(json_data=SAMPLE_RESPONSE)

        result = transcribe_audio(self.audio, self.pool)
        self.assertEqual(result, SAMPLE_RESPONSE)

        kwargs = mock_post.call_args.kwargs
        self.assertEqual(kwargs["headers"]["Authorization"], "Token dg-secret-key-1")
        self.assertTrue(kwargs["headers"]["Content-Type"].startswith("audio/"))
        self.assertEqual(kwargs["params"]["diarize"], "true")
        self.assertEqual(kwargs["params"]["detect_language"], "true")
        self.assertEqual(self.pool.get(key.id).success_count, 1)

    @mock.patch("voiceqc.core.transcribe_deepgram.requests.post")
    def test_explicit_language(self, mock_post):
        self.pool.add("dg", "dg-secret-key-1", Provider.DEEPGRAM)
        mock_post.return_value = _response(json_data=SAMPLE_RESPONSE)
        transcribe_audio(self.audio, self.pool, language="en")
        params = mock_post.call_args.kwargs["params"]
        self.assertEqual(params["language"], "en")
        self.assertNotIn("detect_language", params)

    @mock.patch("voiceqc.core.transcribe_deepgram.requests.post")
    def test_rotates_to_next_key(self, mock_post):
        first = self.pool.add("first", "dg-secret-first", Provider.DEEPGRAM)
        second = self.pool.add("second", "dg-secret-second", Provider.DEEPGRAM)
        mock_post.side_effect = [
            _response(status=401, text="Invalid credentials"),
            _response(json_data=SAMPLE_RESPONSE),
        ]

        transcribe_audio(self.audio, self.pool)
        self.assertEqual(mock_post.call_count, 2)
        used = [c.kwargs["headers"]["Authorization"] for c in mock_post.call_args_list]
        self.assertEqual(len(set(used)), 2)

        by_id = {c.id: c for c in self.pool.list_keys(Provider.DEEPGRAM)}
        self.assertEqual(by_id[first.id].failure_count + by_id[second.id].failure_count, 1)
        self.assertEqual(by_id[first.id].success_count + by_id[second.id].success_count, 1)

    @mock.patch("voiceqc.core.transcribe_deepgram.requests.post")
    def test_model_error_is_permanent(self, mock_post):
        self.pool.add("a", "dg-secret-a", Provider.DEEPGRAM)
        self.pool.add("b", "dg-secret-b", Provider.DEEPGRAM)
        mock_post.return_value = _response(status=400, text="No such model: nova-9")
        with self.assertRaises(PermanentProviderError) as ctx:
            transcribe_audio(self.audio, self.pool, model="nova-9")
        self.assertIn("nova-9", ctx.exception.message)
        self.assertEqual(mock_post.call_count, 1)

    @mock.patch("voiceqc.core.transcribe_deepgram.requests.post")
    def test_all_keys_fail(self, mock_post):
        self.pool.add("a", "dg-secret-a", Provider.DEEPGRAM)
        self.pool.add("b", "dg-secret-b", Provider.DEEPGRAM)
        mock_post.side_effect = requests.exceptions.ConnectionError("unreachable")
        with self.assertRaises(TransientProviderError):
            transcribe_audio(self.audio, self.pool, max_key_attempts=3)
        self.assertEqual(mock_post.call_count, 2)

    @mock.patch("voiceqc.core.transcribe_deepgram.requests.post")
    def test_attempt_limit(self, mock_post):
        for i in range(4):
            self.pool.add(f"k{i}", f"dg-secret-{i}", Provider.DEEPGRAM)
        mock_post.return_value = _response(status=503, text="busy")
        with self.assertRaises(TransientProviderError):
            transcribe_audio(self.audio, self.pool, max_key_attempts=3)
        self.assertEqual(mock_post.call_count, 3)

    @mock.patch("voiceqc.core.transcribe_deepgram.requests.post")
    def test_secret_not_stored_in_usage_log(self, mock_post):
        key = self.pool.add("a", "dg-secret-leaky", Provider.DEEPGRAM)
        mock_post.return_value = _response(status=401, text="bad token dg-secret-leaky")
        with self.assertRaises(TransientProviderError) as ctx:
            transcribe_audio(self.audio, self.pool, max_key_attempts=1)
        self.assertNotIn("dg-secret-leaky", ctx.exception.message)
        self.assertNotIn("dg-secret-leaky", self.db.get_key_usage(key.id)[0].error_message)

    def test_no_keys(self):
        with self.assertRaises(NoActiveCredentialError):
            transcribe_audio(self.audio, self.pool)

    def test_missing_audio(self):
        self.pool.add("a", "dg-secret-a", Provider.DEEPGRAM)
        with self.assertRaises(JobError) as ctx:
            transcribe_audio(self.audio.with_name("missing.wav"), self.pool)
        self.assertEqual(ctx.exception.code, ErrorCode.AUDIO_NOT_FOUND)


class TestTranscribeDialog(DeepgramTestCase):

    def setUp(self):
        super().setUp()
        self.reporter = ProgressReporter()
        self.dialog = self.db.create_dialog("call.wav")
        self.events = []
        self.reporter.set_callback(self.dialog.id, lambda jid, ev: self.events.append(ev))

    @mock.patch("voiceqc.core.transcribe_deepgram.requests.post")
    def test_persists_transcription(self, mock_post):
        self.pool.add("dg", "dg-secret", Provider.DEEPGRAM)
        mock_post.return_value = _response(json_data=SAMPLE_RESPONSE)

        dialog = transcribe_dialog(self.db, self.pool, self.dialog.id, self.audio, self.reporter)
        self.assertEqual(dialog.transcript, "Hello. How can I help you?")
        self.assertEqual(len(dialog.speaker_segments), 2)
        self.assertEqual(dialog.detected_language, "en")

        stages = [e.stage for e in self.events]
        self.assertEqual(stages[0], ProgressStage.UPLOADING)
        self.assertIn(ProgressStage.PROCESSING, stages)
        self.assertEqual(stages[-1], ProgressStage.COMPLETE)
        progress = [e.progress for e in self.events]
        self.assertEqual(progress, sorted(progress))

    def test_failure_recorded_on_dialog(self):
        with self.assertRaises(NoActiveCredentialError):
            transcribe_dialog(self.db, self.pool, self.dialog.id, self.audio, self.reporter)
        self.assertIn("No active", self.db.get_dialog(self.dialog.id).error_message)
        self.assertEqual(self.events[-1].stage, ProgressStage.ERROR)

    def test_unknown_dialog(self):
        with self.assertRaises(JobError):
            transcribe_dialog(self.db, self.pool, "missing", self.audio, self.reporter)


if __name__ == "__main__":
    unittest.main()
