#!/usr/bin/env python3
"""Unit tests for pipeline configuration."""

import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import tempfile
import unittest
from unittest.mock import patch

from mindscroll.config import PipelineConfig
from mindscroll.jobs import BackoffPolicy, WorkQueue


class TestPipelineConfig(unittest.TestCase):
    """Test PipelineConfig class."""

    def test_default_config(self):
        """Test default configuration values."""
        config = PipelineConfig()
        self.assertEqual(config.concurrency, 2)
        self.assertEqual(config.max_attempts, 3)
        self.assertEqual(config.backoff_type, 'exponential')
        self.assertEqual(config.backoff_delay, 5.0)
        self.assertTrue(config.data_dir.endswith('.mindscroll'))

    def test_custom_config(self):
        """Test custom configuration values."""
        config = PipelineConfig(concurrency=4, max_attempts=5, backoff_type='fixed')
        self.assertEqual(config.concurrency, 4)
        self.assertEqual(config.max_attempts, 5)
        self.assertEqual(config.backoff_type, 'fixed')

    def test_invalid_values(self):
        """Invalid values are rejected at construction."""
        with self.assertRaises(ValueError):
            PipelineConfig(concurrency=0)
        with self.assertRaises(ValueError):
            PipelineConfig(max_attempts=0)
        with self.assertRaises(ValueError):
            PipelineConfig(backoff_type='linear')
        with self.assertRaises(ValueError):
            PipelineConfig(backoff_delay=-1)

    def test_db_paths(self):
        """Database files live in the data directory, created on demand."""
        with tempfile.TemporaryDirectory() as tmpdir:
            data_dir = os.path.join(tmpdir, 'nested', 'data')
            config = PipelineConfig(data_dir=data_dir)

            self.assertEqual(config.jobs_db_path, os.path.join(data_dir, 'jobs.db'))
            self.assertEqual(config.queue_db_path, os.path.join(data_dir, 'queue.db'))
            self.assertEqual(config.learning_db_path, os.path.join(data_dir, 'learning.db'))
            self.assertTrue(os.path.isdir(data_dir))

    @patch.dict(os.environ, {}, clear=True)
    def test_from_env_default(self):
        """Test loading from environment with defaults."""
        config = PipelineConfig.from_env()
        self.assertEqual(config.concurrency, 2)
        self.assertEqual(config.generation_timeout, 300)
        self.assertEqual(config.lease_timeout, 600)

    @patch.dict(os.environ, {
        'MINDSCROLL_DATA_DIR': '/tmp/mindscroll-test',
        'MINDSCROLL_CONCURRENCY': '8',
        'MINDSCROLL_MAX_ATTEMPTS': '5',
        'MINDSCROLL_BACKOFF_TYPE': 'FIXED',
        'MINDSCROLL_BACKOFF_DELAY': '0.5',
        'MINDSCROLL_KEEP_COMPLETED': '100',
    }, clear=True)
    def test_from_env_custom(self):
        """Test loading from environment with custom values."""
        config = PipelineConfig.from_env()
        self.assertEqual(config.data_dir, '/tmp/mindscroll-test')
        self.assertEqual(config.concurrency, 8)
        self.assertEqual(config.max_attempts, 5)
        self.assertEqual(config.backoff_type, 'fixed')
        self.assertEqual(config.backoff_delay, 0.5)
        self.assertEqual(config.keep_completed, 100)

    @patch.dict(os.environ, {'MINDSCROLL_CONCURRENCY': 'many'}, clear=True)
    def test_from_env_invalid(self):
        """Test that malformed environment values raise."""
        with self.assertRaises(ValueError):
            PipelineConfig.from_env()

    def test_queue_from_config(self):
        """The work queue takes its retry and retention policy from the config."""
        with tempfile.TemporaryDirectory() as tmpdir:
            config = PipelineConfig(
                data_dir=tmpdir,
                max_attempts=4,
                backoff_type='fixed',
                backoff_delay=2.0,
                keep_completed=7,
            )
            work_queue = WorkQueue.from_config(config)
            try:
                job_id = work_queue.enqueue('process-text-upload', {})
                item = work_queue.get_item(job_id)
                self.assertEqual(item.max_attempts, 4)
                self.assertEqual(item.backoff, BackoffPolicy('fixed', 2.0))
                self.assertEqual(work_queue.keep_completed, 7)
            finally:
                work_queue.close()


if __name__ == '__main__':
    unittest.main()
