import unittest

import numpy as np

from livediar.backends.stub import ToneSignatureBackend
from livediar.components.speaker_registry import SpeakerRegistry
from livediar.errors import InvalidAudioError, NoSpeechDetectedError, SpeakerNotFoundError
from livediar.services.enrollment import SpeakerEnrollment
from livediar.services.inference_executor import InferenceExecutor
from livediar.tests.fakes import SR, tone


class TestSpeakerEnrollment(unittest.TestCase):

    def setUp(self):
        self.backend = ToneSignatureBackend()
        self.executor = InferenceExecutor(self.backend, SR)
        self.executor.start()
        self.registry = SpeakerRegistry()
        self.enrollment = SpeakerEnrollment(self.executor, self.registry, SR)

    def tearDown(self):
        self.executor.stop(timeout=2.0)

    def test_validate_audio(self):
        self.assertTrue(self.enrollment.validate_audio(tone(220, 2.0)).is_valid)
        cases = {
            "short": tone(220, 0.5),
            "silent": np.zeros(SR * 2, dtype=np.float32),
            "clipped": tone(220, 2.0, amp=2.0),
            "stereo": np.zeros((SR, 2), dtype=np.float32),
            "empty": np.zeros(0, dtype=np.float32),
        }
        for label, audio in cases.items():
            with self.subTest(case=label):
                result = self.enrollment.validate_audio(audio)
                self.assertFalse(result.is_valid)
                self.assertTrue(result.issues)

    def test_enroll_then_match(self):
        """An enrolled voice is recognized later in the session."""
        speaker = self.enrollment.enroll(tone(220, 2.0), "Alice")
        self.assertTrue(speaker.id.startswith("known_"))
        self.assertEqual(speaker.name, "Alice")
        self.assertEqual(self.backend.calls, 1)

        embedding = self.backend.embedding_for_frequency(220)
        self.assertEqual(self.registry.assign(embedding, 1.0), speaker.id)

        self.assertGreater(self.enrollment.similarity(tone(220, 1.5), speaker.id), 0.95)
        self.assertLess(self.enrollment.similarity(tone(440, 1.5), speaker.id), 0.5)

    def test_enroll_from_clips_skips_bad_clips(self):
        speaker = self.enrollment.enroll_from_clips(
            [tone(330, 2.0), np.zeros(SR * 2, dtype=np.float32), tone(330, 1.5)], "Carol", speaker_id="known_carol"
        )
        self.assertEqual(speaker.id, "known_carol")
        self.assertAlmostEqual(speaker.duration, 3.5)

    def test_enroll_without_usable_audio(self):
        with self.assertRaises(NoSpeechDetectedError):
            self.enrollment.enroll(np.zeros(SR * 2, dtype=np.float32), "Nobody")
        with self.assertRaises(InvalidAudioError):
            self.enrollment.extract_best_embedding(tone(220, 0.2))
        # Too quiet for the backend to find speech, loud enough to validate
        with self.assertRaises(NoSpeechDetectedError):
            self.enrollment.extract_best_embedding(tone(220, 2.0, amp=0.005))

    def test_enhance_and_rename(self):
        speaker = self.enrollment.enroll(tone(220, 2.0), "Alice", speaker_id="known_alice")
        enhanced = self.enrollment.enhance("known_alice", [tone(220, 2.0)])
        self.assertAlmostEqual(enhanced.duration, 4.0)
        self.assertEqual(enhanced.name, "Alice")
        self.assertEqual(self.enrollment.rename(speaker.id, "Alicia").name, "Alicia")

        with self.assertRaises(SpeakerNotFoundError):
            self.enrollment.enhance("known_nobody", [tone(220, 2.0)])
        with self.assertRaises(SpeakerNotFoundError):
            self.enrollment.similarity(tone(220, 2.0), "known_nobody")


if __name__ == '__main__':
    unittest.main()
