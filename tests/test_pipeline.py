"""
Tests for the Pipeline application root.
"""

import logging

from knowman.config import AIConfig, KnowmanConfig
from knowman.pipeline import Pipeline

from conftest import wait_until


class TestLifecycle:

    def test_creates_data_directory(self, tmp_path):
        config = KnowmanConfig(data_dir=tmp_path / "new" / "dir")
        with Pipeline(config=config, ops_log=False):
            pass
        assert (tmp_path / "new" / "dir" / "knowman.db").exists()
        assert (tmp_path / "new" / "dir" / "queue.db").exists()

    def test_loads_config_from_data_dir(self, tmp_path):
        (tmp_path / "knowman.toml").write_text("[processing]\nworkers = 3\n")
        with Pipeline(tmp_path, ops_log=False) as pipeline:
            assert pipeline.config.workers == 3
            assert pipeline.queues.descriptor("tagging").concurrency == 6

    def test_ops_log_attached_and_removed(self, tmp_path):
        knowman_logger = logging.getLogger("knowman")
        before = list(knowman_logger.handlers)

        pipeline = Pipeline(config=KnowmanConfig(data_dir=tmp_path))
        assert len(knowman_logger.handlers) == len(before) + 1
        pipeline.capture("Hello.", "T", "alice")
        pipeline.close()

        assert knowman_logger.handlers == before
        log_text = (tmp_path / "knowman-ops.log").read_text()
        assert "Capturing content: T for user alice" in log_text

    def test_config_problems_logged(self, tmp_path, caplog):
        config = KnowmanConfig(
            data_dir=tmp_path,
            ai=AIConfig(load_errors=["Invalid value for env x: 'y'"]),
            load_errors=["PROCESSING_WORKERS must be >= 1 (got 0)"],
        )
        with caplog.at_level(logging.WARNING, logger="knowman.pipeline"):
            with Pipeline(config=config, ops_log=False):
                pass
        messages = [r.getMessage() for r in caplog.records]
        assert "Configuration problem: Invalid value for env x: 'y'" in messages
        assert "Configuration problem: PROCESSING_WORKERS must be >= 1 (got 0)" in messages

    def test_background_workers(self, pipeline):
        item, _ = pipeline.capture("Hello. World.", "T", "alice")
        pipeline.start()
        assert wait_until(
            lambda: pipeline.store.get_item(item.id).status == "processed"
            and all(j.status == "completed" for j in pipeline.store.jobs_for_item(item.id))
        )
        pipeline.stop(timeout=5)
        assert not pipeline.workers.running

    def test_close_stops_running_workers(self, offline_config):
        pipeline = Pipeline(config=offline_config, ops_log=False)
        pipeline.start()
        pipeline.close()
        assert not pipeline.workers.running

    def test_test_provider(self, pipeline):
        assert pipeline.test_provider()["health"] is True
        assert pipeline.test_provider(for_embeddings=True)["config"]["testing"] == "embedding"
