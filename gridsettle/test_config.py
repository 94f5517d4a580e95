import os
import shutil
import tempfile
import unittest
from gridsettle.config import Config


class TestConfig(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def test_defaults(self):
        config = Config.default()
        self.assertEqual(config.tree.depth, 256)
        self.assertEqual((config.consensus.quorum_numerator, config.consensus.quorum_denominator), (2, 3))
        self.assertEqual(config.dispute.challenge_window, 7 * 86400.0)
        self.assertFalse(config.monitoring.enabled)

    def test_file_round_trip(self):
        config = Config.default()
        config.collector.max_batch_size = 64
        config.prover.timeout = 2.5
        path = os.path.join(self.temp_dir, 'conf', 'node.json')

        config.to_file(path)
        loaded = Config.from_file(path)
        self.assertEqual(loaded, config)

    def test_missing_sections_use_defaults(self):
        config = Config.from_dict({'consensus': {'voting_window': 3.0}})
        self.assertEqual(config.consensus.voting_window, 3.0)
        self.assertEqual(config.consensus.quorum_numerator, 2)
        self.assertEqual(config.settlement.max_retries, 5)

    def test_unknown_field_rejected(self):
        with self.assertRaises(TypeError):
            Config.from_dict({'prover': {'gpu_count': 8}})


if __name__ == '__main__':
    unittest.main()
