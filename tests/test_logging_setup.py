"""
Tests for logging setup and configuration utilities.
"""

import logging
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from ssh_broker.infrastructure.config.models import LoggingConfig
from ssh_broker.infrastructure.logging.setup import (
    InterceptHandler, LoggingManager, setup_logging
)


class TestSetupLogging:

    def setup_method(self) -> None:
        self.config = LoggingConfig(level="info")

    @patch('ssh_broker.infrastructure.logging.setup.logging.basicConfig')
    @patch('ssh_broker.infrastructure.logging.setup.loguru_logger')
    def test_console_and_file_sinks(self, mock_loguru: Mock, mock_basic: Mock,
                                    tmp_path: Path) -> None:
        self.config.log_directory = str(tmp_path / "logs")

        setup_logging(self.config)

        mock_loguru.remove.assert_called_once()
        assert mock_loguru.add.call_count == 2
        file_call = mock_loguru.add.call_args_list[1]
        assert file_call.args[0] == tmp_path / "logs" / "broker.log"
        assert file_call.kwargs['compression'] == "zip"
        assert file_call.kwargs['rotation'] == self.config.max_file_size
        assert file_call.kwargs['level'] == "INFO"
        assert (tmp_path / "logs").is_dir()

        handlers = mock_basic.call_args.kwargs['handlers']
        assert isinstance(handlers[0], InterceptHandler)
        assert mock_basic.call_args.kwargs['force'] is True

    @patch('ssh_broker.infrastructure.logging.setup.logging.basicConfig')
    @patch('ssh_broker.infrastructure.logging.setup.loguru_logger')
    def test_console_only(self, mock_loguru: Mock, mock_basic: Mock) -> None:
        self.config.file_enabled = False

        setup_logging(self.config)

        assert mock_loguru.add.call_count == 1

    @patch('ssh_broker.infrastructure.logging.setup.logging.basicConfig')
    @patch('ssh_broker.infrastructure.logging.setup.loguru_logger')
    def test_asyncssh_logger_quietened(self, mock_loguru: Mock, mock_basic: Mock) -> None:
        self.config.file_enabled = False
        setup_logging(self.config)
        assert logging.getLogger("asyncssh").level == logging.WARNING


class TestInterceptHandler:

    @patch('ssh_broker.infrastructure.logging.setup.loguru_logger')
    def test_forwards_record_to_loguru(self, mock_loguru: Mock) -> None:
        mock_loguru.level.return_value = Mock(name="level")
        mock_loguru.level.return_value.name = "WARNING"
        record = logging.LogRecord("ssh_broker.test", logging.WARNING, __file__, 1,
                                   "Tunnel %s failed", ("tunnel-1",), None)

        InterceptHandler().emit(record)

        mock_loguru.opt.return_value.log.assert_called_once_with("WARNING", "Tunnel tunnel-1 failed")

    @patch('ssh_broker.infrastructure.logging.setup.loguru_logger')
    def test_unknown_level_uses_number(self, mock_loguru: Mock) -> None:
        mock_loguru.level.side_effect = ValueError("unknown level")
        record = logging.LogRecord("x", 15, __file__, 1, "custom", (), None)
        record.levelname = "VERBOSE"

        InterceptHandler().emit(record)

        mock_loguru.opt.return_value.log.assert_called_once_with(15, "custom")


class TestLoggingManager:

    @pytest.fixture
    def manager(self, tmp_path: Path) -> LoggingManager:
        return LoggingManager(LoggingConfig(log_directory=str(tmp_path / "logs")))

    @pytest.mark.asyncio
    @patch('ssh_broker.infrastructure.logging.setup.setup_logging')
    async def test_start_configures_once(self, mock_setup: Mock, manager: LoggingManager) -> None:
        await manager.start()
        await manager.start()
        mock_setup.assert_called_once()

        health = await manager.check_health()
        assert health['healthy']
        assert health['status'] == 'running'
        assert health['details']['log_level'] == "INFO"

    @pytest.mark.asyncio
    async def test_health_when_stopped(self, manager: LoggingManager) -> None:
        health = await manager.check_health()
        assert health['status'] == 'stopped'
        assert health['details']['log_directory_exists'] is False

    @patch('ssh_broker.infrastructure.logging.setup.loguru_logger')
    def test_structured_and_error_logging(self, mock_loguru: Mock, manager: LoggingManager) -> None:
        manager.log_structured("info", "session restored", session_id="session-1")
        mock_loguru.bind.assert_called_with(session_id="session-1")
        mock_loguru.bind.return_value.log.assert_called_once_with("INFO", "session restored")

        error = RuntimeError("boom")
        manager.log_error("restore failed", error, session_id="session-1")
        mock_loguru.bind.return_value.opt.assert_called_once_with(exception=error)

    @patch('ssh_broker.infrastructure.logging.setup.loguru_logger')
    def test_get_logger_binds_name(self, mock_loguru: Mock, manager: LoggingManager) -> None:
        manager.get_logger("tunnels")
        mock_loguru.bind.assert_called_once_with(name="tunnels")
