import os
import tempfile
import unittest
from unittest import mock

from livediar.config import DiarizerConfig
from livediar.errors import ConfigurationError


class TestDiarizerConfig(unittest.TestCase):

    def test_defaults_are_valid(self):
        cfg = DiarizerConfig()
        self.assertEqual(cfg.sample_rate, 16000)
        self.assertEqual(cfg.max_live_samples, 15 * 16000)
        self.assertTrue(cfg.min_window_seconds <= cfg.default_window_seconds <= cfg.max_window_seconds)

    def test_invalid_values_rejected(self):
        """Inconsistent settings fail at construction."""
        bad = [
            dict(min_window_seconds=6.0, default_window_seconds=5.0),
            dict(embedding_threshold=0.7, speaker_threshold=0.6),
            dict(max_live_buffer_seconds=5.0),
            dict(terminal_drop_ceiling=2),
            dict(buffer_alignment=48),
            dict(shrink_ratio=0.9),
        ]
        for changes in bad:
            with self.subTest(**changes):
                with self.assertRaises(ConfigurationError):
                    DiarizerConfig(**changes)

    def test_replace_revalidates(self):
        cfg = DiarizerConfig()
        self.assertEqual(cfg.replace(cooldown_seconds=3.0).cooldown_seconds, 3.0)
        with self.assertRaises(ConfigurationError):
            cfg.replace(cooldown_seconds=0)

    def test_from_env_reads_environment_and_dotenv(self):
        """Environment wins over the .env file; types follow the field defaults."""
        with tempfile.TemporaryDirectory() as tmp:
            env_file = os.path.join(tmp, ".env")
            with open(env_file, "w") as f:
                f.write("LIVEDIAR_COOLDOWN_SECONDS=20\n")
                f.write("LIVEDIAR_MAX_PAUSE_CYCLES=5\n")

            env = {
                "LIVEDIAR_MAX_PAUSE_CYCLES": "2",
                "LIVEDIAR_REAL_TIME_PROCESSING": "off",
                "LIVEDIAR_RECORDING_DIR": tmp,
            }
            with mock.patch.dict(os.environ, env):
                cfg = DiarizerConfig.from_env(env_file=env_file)

        self.assertEqual(cfg.cooldown_seconds, 20.0)
        self.assertEqual(cfg.max_pause_cycles, 2)
        self.assertFalse(cfg.real_time_processing)
        self.assertEqual(cfg.recording_dir, tmp)

    def test_from_env_rejects_garbage(self):
        with mock.patch.dict(os.environ, {"LIVEDIAR_WATCHDOG_MAX_ATTEMPTS": "four"}):
            with self.assertRaises(ConfigurationError):
                DiarizerConfig.from_env(env_file=os.devnull)


if __name__ == '__main__':
    unittest.main()
