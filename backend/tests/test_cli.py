"""
Tests for the sinalite_ingest command-line entry point.
"""
import os
import signal
from unittest.mock import MagicMock, patch

import pytest

import sinalite_ingest
from catalog_ingest.classifier import ProductFamily
from catalog_ingest.errors import AuthError, IngestCancelled, PersistenceError
from catalog_ingest.stats import StatsTracker


CLI_ENV = {
    'DATABASE_URL': 'sqlite:///:memory:',
    'SINALITE_CLIENT_ID': 'test-client',
    'SINALITE_CLIENT_SECRET': 'test-secret',
}


@pytest.fixture
def cli_env():
    with patch.dict(os.environ, CLI_ENV, clear=True), \
            patch('sinalite_ingest.load_env_file'):
        yield


@pytest.fixture
def pipeline_cls():
    """Patch IngestPipeline with a mock carrying a real StatsTracker."""
    with patch('sinalite_ingest.IngestPipeline') as cls:
        instance = MagicMock()
        instance.stats = StatsTracker(('en_ca', 'en_us'))
        cls.return_value = instance
        yield cls


class TestParseArgs:
    """Flag names and aliases."""

    def test_camel_case_flags(self):
        args = sinalite_ingest.parse_args(['--productId', '12', '--storeCodes', 'en_us', '--limit', '5'])
        assert (args.product_id, args.store_codes, args.limit) == (12, 'en_us', 5)

    def test_kebab_case_aliases(self):
        args = sinalite_ingest.parse_args(['--product-id', '12', '--store-codes', 'en_ca,en_us'])
        assert (args.product_id, args.store_codes) == (12, 'en_ca,en_us')

    def test_defaults(self):
        args = sinalite_ingest.parse_args([])
        assert args.dry_run is False
        assert args.limit is None
        assert args.workers is None
        assert args.output_dir is None


class TestExitCodes:
    """Exit status for each way a run can end."""

    def test_success(self, cli_env, pipeline_cls, capsys):
        def run():
            pipeline_cls.return_value.stats.record_success(1, 'en_us', ProductFamily.REGULAR)
        pipeline_cls.return_value.run.side_effect = run

        assert sinalite_ingest.main([]) == 0
        assert 'SINALITE INGESTION REPORT' in capsys.readouterr().out
        pipeline_cls.return_value.close.assert_called_once()

    def test_pair_failure_exits_one(self, cli_env, pipeline_cls):
        def run():
            pipeline_cls.return_value.stats.record_failure(1, 'en_us', RuntimeError('x'))
        pipeline_cls.return_value.run.side_effect = run

        assert sinalite_ingest.main([]) == 1

    def test_missing_config_exits_one(self, pipeline_cls):
        """Missing credentials fail before the pipeline is built."""
        with patch.dict(os.environ, {}, clear=True), patch('sinalite_ingest.load_env_file'):
            assert sinalite_ingest.main([]) == 1
        pipeline_cls.assert_not_called()

    def test_auth_failure_exits_one(self, cli_env, pipeline_cls, capsys):
        pipeline_cls.return_value.run.side_effect = AuthError('Auth failed (401): bad secret')

        assert sinalite_ingest.main([]) == 1
        assert 'ABORTED' in capsys.readouterr().out

    def test_database_failure_exits_one(self, cli_env, pipeline_cls):
        pipeline_cls.return_value.run.side_effect = PersistenceError('Database setup failed: refused')
        assert sinalite_ingest.main([]) == 1

    def test_cancelled_exits_one(self, cli_env, pipeline_cls):
        pipeline_cls.return_value.run.side_effect = IngestCancelled('Cancellation requested')
        assert sinalite_ingest.main([]) == 1
        assert pipeline_cls.return_value.stats.interrupted is True


class TestOptions:
    """CLI options reach settings and the pipeline."""

    def test_dry_run_needs_no_database(self, pipeline_cls):
        env = {k: v for k, v in CLI_ENV.items() if k != 'DATABASE_URL'}
        with patch.dict(os.environ, env, clear=True), patch('sinalite_ingest.load_env_file'):
            assert sinalite_ingest.main(['--dry-run']) == 0

        assert pipeline_cls.call_args.kwargs['dry_run'] is True

    def test_overrides_passed_through(self, cli_env, pipeline_cls):
        sinalite_ingest.main(['--storeCodes', 'en_us', '--workers', '3', '--limit', '2', '--productId', '9'])

        settings = pipeline_cls.call_args.args[0]
        kwargs = pipeline_cls.call_args.kwargs
        assert settings.store_codes == ('en_us',)
        assert settings.workers == 3
        assert kwargs['limit'] == 2
        assert kwargs['product_id'] == 9

    def test_output_dir_writes_csv(self, cli_env, pipeline_cls, tmp_path):
        def run():
            pipeline_cls.return_value.stats.record_skip(1, 'en_us', 'not_found')
        pipeline_cls.return_value.run.side_effect = run

        sinalite_ingest.main(['--output-dir', str(tmp_path)])

        assert len(list(tmp_path.glob('sinalite_ingest_*.csv'))) == 1

    def test_signal_handlers_restored(self, cli_env, pipeline_cls):
        before = signal.getsignal(signal.SIGINT)
        sinalite_ingest.main([])
        assert signal.getsignal(signal.SIGINT) is before

    def test_signal_sets_cancel_event(self, cli_env, pipeline_cls):
        """SIGINT during the run sets the shared cancellation event."""
        def run():
            handler = signal.getsignal(signal.SIGINT)
            handler(signal.SIGINT, None)
        pipeline_cls.return_value.run.side_effect = run

        sinalite_ingest.main([])

        cancel_event = pipeline_cls.call_args.kwargs['cancel_event']
        assert cancel_event.is_set()
