#!/usr/bin/env python3
"""
test_gui_functions.py — pytest suite for the GUI widgets, menu actions,
toolbar buttons and options tab.
============================================================================

Tests every GUI class and action in dm32_reader.py Section 12:

  LogWidget           — append_log, level colouring
  ChannelTableWidget  — load_slots rows/columns
  OptionsWidget       — load/apply/reset, config_changed
  DownloadWorker      — synchronous run against the virtual radio
  MainWindow          — build_ui, menu bar, state updates, load/save image,
                        virtual connect, download finished, close event

Run:
    cd dm32_reader
    pytest tests/test_gui_functions.py -v
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

# ── Import the module under test ──
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
import dm32_reader as dm

# ── Conditional skip if PySide6 is not installed ──
pytestmark = pytest.mark.skipif(
    not dm.GUI_AVAILABLE,
    reason="PySide6 not installed — GUI tests skipped",
)

# ── Ensure QApplication exists (one per process) ──
_app = None

def get_app():
    global _app
    if _app is None:
        from PySide6.QtWidgets import QApplication
        _app = QApplication.instance() or QApplication(sys.argv)
    return _app


# ═══════════════════════════════════════════════════════════════════════
# FIXTURES
# ═══════════════════════════════════════════════════════════════════════

DIGITAL = bytes([0x14, 0x00, 0x00, 0x00, 0x34, 0x01, 0x00, 0x00]) + b"\xFF" * 8
ANALOG = bytes([0x04, 0x80, 0x00, 0x00, 0x30, 0x01, 0x00, 0x01]) + b"\xFF" * 8
F446 = bytes.fromhex("00006044")
F145_5 = bytes.fromhex("00005514")
F144_9 = bytes.fromhex("00004914")


def _slot(name: str, body: bytes) -> bytes:
    return (name.encode("ascii") + b"\x00" + body).ljust(dm.CHAN_STRIDE, b"\xFF")


@pytest.fixture(scope="session", autouse=True)
def qapp():
    """Create a single QApplication for the entire test session."""
    app = get_app()
    yield app


@pytest.fixture
def fast_config():
    return dm.ReaderConfig(pulse_settle_ms=0, program_pause_ms=0, retry_backoff_ms=0)


@pytest.fixture
def codeplug() -> bytes:
    data = bytearray(b"\xFF" * 0x21000)
    zones = b"Richmond\x00Goochland\x00"
    data[0x1000:0x1000 + len(zones)] = zones
    slots = _slot("CH1", F446 + F446 + DIGITAL) + _slot("RPT A", F145_5 + F144_9 + ANALOG)
    data[dm.CHAN_BASE:dm.CHAN_BASE + len(slots)] = slots
    return bytes(data)


@pytest.fixture
def codeplug_image(codeplug) -> dm.MemoryImage:
    image = dm.MemoryImage()
    image.write(0, codeplug)
    return image


@pytest.fixture
def codeplug_file(codeplug_image, tmp_path) -> Path:
    p = tmp_path / "codeplug.img"
    codeplug_image.save(str(p))
    return p


@pytest.fixture
def slots(codeplug_image):
    return dm.SlotParser(codeplug_image).scan()


@pytest.fixture
def main_window():
    w = dm.MainWindow()
    yield w
    w.close()


def _select_virtual(window) -> None:
    for i in range(window.transport_combo.count()):
        if window.transport_combo.itemData(i) == "virtual":
            window.transport_combo.setCurrentIndex(i)
            return
    raise AssertionError("virtual transport not offered")


# ═══════════════════════════════════════════════════════════════════════
# LOG WIDGET
# ═══════════════════════════════════════════════════════════════════════

class TestLogWidget:

    def test_creation(self):
        w = dm.LogWidget()
        assert w.isReadOnly()

    def test_append_info(self):
        w = dm.LogWidget()
        w.append_log("PSEARCH sent", "info")
        assert "PSEARCH sent" in w.toPlainText()

    def test_append_all_levels(self):
        w = dm.LogWidget()
        for level in ("info", "warning", "error", "debug", "success"):
            w.append_log(f"msg-{level}", level)
        text = w.toPlainText()
        for level in ("info", "warning", "error", "debug", "success"):
            assert f"msg-{level}" in text

    def test_unknown_level_falls_back_to_info(self):
        w = dm.LogWidget()
        w.append_log("odd", "verbose")
        assert "odd" in w.toPlainText()


# ═══════════════════════════════════════════════════════════════════════
# CHANNEL TABLE
# ═══════════════════════════════════════════════════════════════════════

class TestChannelTableWidget:

    def test_headers(self):
        w = dm.ChannelTableWidget()
        assert w.columnCount() == len(dm.ChannelTableWidget.HEADERS)
        assert w.horizontalHeaderItem(2).text() == "Name"

    def test_load_slots(self, slots):
        w = dm.ChannelTableWidget()
        w.load_slots(slots)
        assert w.rowCount() == 2
        assert w.item(0, 0).text() == "0"
        assert w.item(0, 1).text() == f"0x{dm.CHAN_BASE:06X}"
        assert w.item(0, 2).text() == "CH1"
        assert w.item(0, 3).text() == "Digital"
        assert w.item(0, 4).text() == "446.00000"
        assert w.item(1, 0).text() == "1"
        assert w.item(1, 2).text() == "RPT A"
        assert w.item(1, 5).text() == "144.90000"
        assert w.item(1, 9).text() == "Y"

    def test_reload_replaces_rows(self, slots):
        w = dm.ChannelTableWidget()
        w.load_slots(slots)
        w.load_slots(slots[:1])
        assert w.rowCount() == 1

    def test_empty(self):
        w = dm.ChannelTableWidget()
        w.load_slots([])
        assert w.rowCount() == 0

    def test_read_only(self):
        from PySide6.QtWidgets import QAbstractItemView
        w = dm.ChannelTableWidget()
        assert w.editTriggers() == QAbstractItemView.NoEditTriggers


# ═══════════════════════════════════════════════════════════════════════
# OPTIONS WIDGET
# ═══════════════════════════════════════════════════════════════════════

class TestOptionsWidget:

    def test_loads_defaults(self):
        cfg = dm.ReaderConfig()
        w = dm.OptionsWidget(cfg)
        assert w.spin_baud.value() == dm.DM32_BAUD
        assert w.spin_header_budget.value() == cfg.header_sync_budget_ms
        assert w.spin_chunk_timeout.value() == cfg.payload_timeout_ms
        assert w.spin_chunk.value() == cfg.payload_chunk
        assert w.spin_attempts.value() == cfg.read_attempts
        assert w.spin_backoff.value() == cfg.retry_backoff_ms

    def test_apply_to_config(self):
        cfg = dm.ReaderConfig()
        w = dm.OptionsWidget(cfg)
        w.spin_baud.setValue(57600)
        w.spin_attempts.setValue(5)
        w.spin_chunk.setValue(256)
        w.apply_to_config(cfg)
        assert cfg.baud == 57600
        assert cfg.read_attempts == 5
        assert cfg.payload_chunk == 256

    def test_apply_emits_config_changed(self):
        cfg = dm.ReaderConfig()
        w = dm.OptionsWidget(cfg)
        seen = MagicMock()
        w.config_changed.connect(seen)
        w.spin_backoff.setValue(0)
        w._on_apply()
        seen.assert_called_once()
        assert cfg.retry_backoff_ms == 0

    def test_reset_restores_defaults(self):
        cfg = dm.ReaderConfig(read_attempts=9, payload_chunk=64)
        w = dm.OptionsWidget(cfg)
        assert w.spin_attempts.value() == 9
        w._on_reset()
        assert w.spin_attempts.value() == dm.DEFAULT_READ_ATTEMPTS
        assert cfg.read_attempts == dm.DEFAULT_READ_ATTEMPTS
        assert cfg.payload_chunk == dm.PAYLOAD_CHUNK


# ═══════════════════════════════════════════════════════════════════════
# DOWNLOAD WORKER
# ═══════════════════════════════════════════════════════════════════════

class TestDownloadWorker:

    def _link(self, codeplug, config):
        link = dm.RadioLink(dm.VirtualRadioTransport(image=codeplug), config)
        link.connect()
        return link

    def test_instantiation(self, codeplug, fast_config):
        worker = dm.DownloadWorker(self._link(codeplug, fast_config))
        assert worker.regions == list(dm.DEFAULT_REGION_MAP)
        assert worker.report is None
        assert worker.image.written_max == 0

    def test_run_emits_finished(self, codeplug, fast_config):
        worker = dm.DownloadWorker(self._link(codeplug, fast_config), [dm.Region(0x1000, 0x100)])
        finished = MagicMock()
        progress = MagicMock()
        worker.finished.connect(finished)
        worker.progress.connect(progress)
        worker.run()
        finished.assert_called_once_with(True)
        assert progress.called
        assert worker.report.regions_ok == [dm.Region(0x1000, 0x100)]
        assert worker.image.view(0x1000, 8) == b"Richmond"

    def test_run_forwards_state_names(self, codeplug, fast_config):
        worker = dm.DownloadWorker(self._link(codeplug, fast_config), [dm.Region(0x1000, 0x10)])
        states = []
        worker.state_changed.connect(states.append)
        worker.run()
        assert "HANDSHAKE" in states
        assert "READING" in states

    def test_run_clears_previous_cancel(self, codeplug, fast_config):
        link = self._link(codeplug, fast_config)
        link.cancel()
        worker = dm.DownloadWorker(link, [dm.Region(0x1000, 0x10)])
        worker.run()
        assert not worker.report.cancelled

    def test_all_regions_failed(self, codeplug, fast_config):
        worker = dm.DownloadWorker(self._link(codeplug, fast_config),
                                   [dm.Region(dm.DM32_MEMSZ - 4, 16)])
        finished = MagicMock()
        worker.finished.connect(finished)
        worker.run()
        finished.assert_called_once_with(False)

    def test_repeat_runs_do_not_stack_callbacks(self, codeplug, fast_config):
        link = self._link(codeplug, fast_config)
        counts = []
        for _ in range(2):
            worker = dm.DownloadWorker(link, [dm.Region(0x1000, 0x100)])
            progress = MagicMock()
            worker.progress.connect(progress)
            worker.run()
            counts.append(progress.call_count)
        assert counts[0] == counts[1] > 0
        assert link._callbacks.get("progress", []) == []
        assert link._callbacks.get("state", []) == []
        assert link._callbacks.get("log", []) == []

    def test_exception_reports_failure(self, codeplug, fast_config):
        worker = dm.DownloadWorker(self._link(codeplug, fast_config))
        finished = MagicMock()
        messages = []
        worker.finished.connect(finished)
        worker.log_message.connect(lambda msg, lvl: messages.append((msg, lvl)))
        with patch.object(worker.reader, "download", side_effect=RuntimeError("boom")):
            worker.run()
        finished.assert_called_once_with(False)
        assert ("Exception: boom", "error") in messages


# ═══════════════════════════════════════════════════════════════════════
# MAIN WINDOW — STRUCTURE
# ═══════════════════════════════════════════════════════════════════════

class TestMainWindowStructure:

    def test_title(self, main_window):
        assert dm.__app_name__ in main_window.windowTitle()
        assert dm.__version__ in main_window.windowTitle()

    def test_tabs(self, main_window):
        names = [main_window.tabs.tabText(i) for i in range(main_window.tabs.count())]
        assert names == ["Channels", "Codeplug", "Log", "Options"]

    def test_buttons_initial_state(self, main_window):
        assert main_window.load_btn.isEnabled()
        assert main_window.connect_btn.isEnabled()
        assert not main_window.save_btn.isEnabled()
        assert not main_window.export_btn.isEnabled()
        assert not main_window.download_btn.isEnabled()
        assert not main_window.cancel_btn.isEnabled()

    def test_transport_options(self, main_window):
        data = [main_window.transport_combo.itemData(i)
                for i in range(main_window.transport_combo.count())]
        assert "pyserial" in data
        assert "virtual" in data
        assert ("d2xx" in data) == dm.D2XX_AVAILABLE

    def test_initial_state_label(self, main_window):
        assert main_window.state_label.text() == "DISCONNECTED"

    def test_defaults(self, main_window):
        assert main_window._image is None
        assert main_window._slots == []
        assert main_window._regions == list(dm.DEFAULT_REGION_MAP)


# ═══════════════════════════════════════════════════════════════════════
# MAIN WINDOW — MENU BAR
# ═══════════════════════════════════════════════════════════════════════

class TestMainWindowMenuBar:

    def test_menus(self, main_window):
        titles = [a.text() for a in main_window.menuBar().actions()]
        assert titles == ["&File", "&Radio", "&Help"]

    def test_shortcuts(self, main_window):
        assert main_window.action_load.shortcut().toString() == "Ctrl+O"
        assert main_window.action_save.shortcut().toString() == "Ctrl+S"
        assert main_window.action_download.shortcut().toString() == "Ctrl+D"
        assert main_window.action_exit.shortcut().toString() == "Ctrl+Q"

    def test_actions_initial_state(self, main_window):
        assert main_window.action_load.isEnabled()
        assert main_window.action_region_map.isEnabled()
        assert not main_window.action_save.isEnabled()
        assert not main_window.action_export.isEnabled()
        assert not main_window.action_download.isEnabled()
        assert not main_window.action_cancel.isEnabled()

    def test_about(self, main_window):
        with patch.object(dm, "QMessageBox") as mock_box:
            main_window.action_about.trigger()
        mock_box.about.assert_called_once()
        assert dm.__target_radio__ in mock_box.about.call_args[0][2]


# ═══════════════════════════════════════════════════════════════════════
# MAIN WINDOW — ACTIONS
# ═══════════════════════════════════════════════════════════════════════

class TestMainWindowActions:

    def test_update_state(self, main_window):
        for name in ("CONNECTED", "HANDSHAKE", "READING", "ERROR"):
            main_window._update_state(name)
            assert main_window.state_label.text() == name

    def test_update_state_unknown(self, main_window):
        main_window._update_state("WEIRD")
        assert "#888" in main_window.state_label.styleSheet()

    def test_set_image(self, main_window, codeplug_image):
        main_window._set_image(codeplug_image, "test.img")
        assert main_window.channel_table.rowCount() == 2
        assert main_window.file_label.text() == "test.img"
        assert "2 channels" in main_window.count_label.text()
        assert "Richmond" in main_window.config_view.toPlainText()
        assert main_window.save_btn.isEnabled()
        assert main_window.export_btn.isEnabled()
        assert main_window.action_save.isEnabled()
        assert main_window.action_export.isEnabled()

    def test_on_progress(self, main_window):
        main_window._on_progress(50, 100, "Reading")
        assert main_window.progress_bar.value() == 50

    def test_on_progress_zero_total(self, main_window):
        main_window.progress_bar.setValue(7)
        main_window._on_progress(5, 0, "Reading")
        assert main_window.progress_bar.value() == 7

    def test_cancel_without_link(self, main_window):
        main_window._link = None
        main_window._cancel_op()

    def test_start_download_without_link(self, main_window):
        main_window._link = None
        main_window._start_download()
        assert not main_window.cancel_btn.isEnabled()

    def test_options_changed_logs(self, main_window):
        main_window.options_tab._on_apply()
        assert "Options applied" in main_window.log_widget.toPlainText()

    def test_refresh_ports(self, main_window):
        with patch.object(dm.PySerialTransport, "list_ports", return_value=["COM3", "COM7"]):
            main_window._refresh_ports()
        items = [main_window.port_combo.itemText(i) for i in range(main_window.port_combo.count())]
        assert items == ["COM3", "COM7"]

    def test_refresh_ports_none(self, main_window):
        with patch.object(dm.PySerialTransport, "list_ports", return_value=[]):
            main_window._refresh_ports()
        assert main_window.port_combo.itemText(0) == "(no ports found)"

    def test_close_event(self, main_window):
        from PySide6.QtGui import QCloseEvent
        event = QCloseEvent()
        main_window.closeEvent(event)
        assert event.isAccepted()


# ═══════════════════════════════════════════════════════════════════════
# MAIN WINDOW — VIRTUAL CONNECTION & DOWNLOAD
# ═══════════════════════════════════════════════════════════════════════

class TestMainWindowVirtualConnect:

    def test_virtual_lists_placeholder_port(self, main_window):
        _select_virtual(main_window)
        assert main_window.port_combo.itemText(0) == "(virtual)"

    def test_connect_virtual(self, main_window, codeplug_file):
        _select_virtual(main_window)
        main_window._virtual_image_path = str(codeplug_file)
        main_window._connect()
        assert main_window.connect_btn.text() == "Disconnect"
        assert main_window.download_btn.isEnabled()
        assert main_window.action_download.isEnabled()
        assert main_window.state_label.text() == "CONNECTED"

    def test_connect_virtual_dialog_cancelled(self, main_window):
        _select_virtual(main_window)
        main_window._virtual_image_path = None
        with patch.object(dm, "QFileDialog") as mock_dlg:
            mock_dlg.getOpenFileName.return_value = ("", "")
            main_window._connect()
        assert main_window._link is None
        assert main_window.connect_btn.text() == "Connect"
        assert "no image selected" in main_window.log_widget.toPlainText()

    def test_toggle_connect(self, main_window, codeplug_file):
        _select_virtual(main_window)
        main_window._virtual_image_path = str(codeplug_file)
        main_window._toggle_connect()
        assert main_window.connect_btn.text() == "Disconnect"
        main_window._toggle_connect()
        assert main_window.connect_btn.text() == "Connect"
        assert not main_window.download_btn.isEnabled()
        assert main_window.state_label.text() == "DISCONNECTED"

    def test_download_finished_shows_image(self, main_window, codeplug_file, fast_config):
        _select_virtual(main_window)
        main_window._config = fast_config
        main_window._virtual_image_path = str(codeplug_file)
        main_window._connect()
        main_window._worker = dm.DownloadWorker(main_window._link, main_window._regions)
        main_window._worker.run()
        main_window._on_download_finished(True)
        assert main_window.channel_table.rowCount() == 2
        assert main_window.file_label.text() == "(downloaded)"
        assert main_window.download_btn.isEnabled()
        assert not main_window.cancel_btn.isEnabled()
        assert "Download finished" in main_window.log_widget.toPlainText()

    def test_link_log_from_worker_thread_is_queued(self, main_window, codeplug_file, qapp):
        import threading
        _select_virtual(main_window)
        main_window._virtual_image_path = str(codeplug_file)
        main_window._connect()
        t = threading.Thread(
            target=lambda: main_window._link.emit("log", msg="from reader thread", level="info"))
        t.start()
        t.join()
        assert "from reader thread" not in main_window.log_widget.toPlainText()
        qapp.processEvents()
        assert "from reader thread" in main_window.log_widget.toPlainText()

    def test_link_has_one_log_route_after_downloads(self, main_window, codeplug_file, fast_config):
        _select_virtual(main_window)
        main_window._config = fast_config
        main_window._virtual_image_path = str(codeplug_file)
        main_window._connect()
        for _ in range(2):
            main_window._worker = dm.DownloadWorker(main_window._link, [dm.Region(0x1000, 0x10)])
            main_window._worker.run()
        assert len(main_window._link._callbacks["log"]) == 1

    def test_download_finished_failure(self, main_window):
        main_window._worker = None
        main_window._on_download_finished(False)
        assert "Download failed!" in main_window.log_widget.toPlainText()
        assert not main_window.download_btn.isEnabled()


# ═══════════════════════════════════════════════════════════════════════
# MAIN WINDOW — IMAGE FILE OPS (mocked file dialog)
# ═══════════════════════════════════════════════════════════════════════

class TestMainWindowImageOps:

    def test_load_image_via_mock(self, main_window, codeplug_file):
        with patch.object(dm, "QFileDialog") as mock_dlg:
            mock_dlg.getOpenFileName.return_value = (str(codeplug_file), "")
            main_window._load_image()
        assert main_window._image is not None
        assert main_window._image.written_max == 0x21000
        assert len(main_window._slots) == 2
        assert main_window.save_btn.isEnabled()

    def test_load_image_cancelled(self, main_window):
        with patch.object(dm, "QFileDialog") as mock_dlg:
            mock_dlg.getOpenFileName.return_value = ("", "")
            main_window._load_image()
        assert main_window._image is None

    def test_load_image_too_large(self, main_window, tmp_path):
        p = tmp_path / "huge.img"
        p.write_bytes(b"\xFF" * (dm.DM32_MEMSZ + 1))
        with patch.object(dm, "QFileDialog") as mock_dlg:
            mock_dlg.getOpenFileName.return_value = (str(p), "")
            main_window._load_image()
        assert main_window._image is None
        assert "Failed to load image" in main_window.log_widget.toPlainText()

    def test_save_image(self, main_window, codeplug_image, tmp_path):
        main_window._set_image(codeplug_image, "x")
        out = tmp_path / "saved.img"
        with patch.object(dm, "QFileDialog") as mock_dlg:
            mock_dlg.getSaveFileName.return_value = (str(out), "")
            main_window._save_image()
        assert out.stat().st_size == 0x21000
        assert main_window._image_path == str(out)

    def test_save_without_image(self, main_window):
        with patch.object(dm, "QFileDialog") as mock_dlg:
            main_window._save_image()
        mock_dlg.getSaveFileName.assert_not_called()

    def test_export_csvs(self, main_window, codeplug_image, tmp_path):
        main_window._set_image(codeplug_image, "x")
        with patch.object(dm, "QFileDialog") as mock_dlg:
            mock_dlg.getExistingDirectory.return_value = str(tmp_path)
            main_window._export_csvs()
        assert (tmp_path / dm.CHANNELS_CSV).exists()
        assert (tmp_path / dm.ZONES_CSV).exists()

    def test_load_region_map(self, main_window, tmp_path):
        p = tmp_path / "regions.json"
        p.write_text('[{"address": "0x1000", "length": "0x100"}]')
        with patch.object(dm, "QFileDialog") as mock_dlg:
            mock_dlg.getOpenFileName.return_value = (str(p), "")
            main_window._load_region_map()
        assert main_window._regions == [dm.Region(0x1000, 0x100)]

    def test_load_region_map_rejected(self, main_window, tmp_path):
        p = tmp_path / "regions.json"
        p.write_text('[{"address": "0x1FFFFF", "length": "0x100"}]')
        with patch.object(dm, "QFileDialog") as mock_dlg:
            mock_dlg.getOpenFileName.return_value = (str(p), "")
            main_window._load_region_map()
        assert main_window._regions == list(dm.DEFAULT_REGION_MAP)
        assert "Region map rejected" in main_window.log_widget.toPlainText()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
