from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from PyQt6.QtCore import QPoint, Qt, pyqtSignal
from PyQt6.QtGui import QFont
from PyQt6.QtWidgets import (
    QFrame,
    QHBoxLayout,
    QLabel,
    QPushButton,
    QSizeGrip,
    QVBoxLayout,
    QWidget,
)

from config_utils import read_int_env


@dataclass(eq=False)
class SubtitleLine:
    frame: QFrame
    source_label: QLabel
    translation_label: QLabel
    segment_id: Optional[int] = None
    is_interim: bool = True
    is_removed: bool = False


class OverlayWindow(QWidget):
    DRAG_ZONE_HEIGHT = 56
    DEFAULT_MAX_LINES = 4
    PENDING_TRANSLATION = "..."
    INTERIM_COLOR = "#ffff00"
    FINAL_COLOR = "#00ff88"
    TRANSLATION_COLOR = "#cccccc"

    toggle_listening = pyqtSignal(bool)
    clear_requested = pyqtSignal()

    def __init__(self) -> None:
        super().__init__()
        self._drag_offset: Optional[QPoint] = None
        self._listening = False
        self._max_lines = read_int_env("SUBTITLE_MAX_LINES", self.DEFAULT_MAX_LINES)
        self._font_size = read_int_env("SUBTITLE_FONT_SIZE", 24)
        self.lines: list[SubtitleLine] = []
        self.active_line: Optional[SubtitleLine] = None

        self._build_ui()
        self._apply_window_style()

    def on_preview(self, text: str, translation: str) -> None:
        cleaned = (text or "").strip()
        if not cleaned:
            if self.active_line is not None:
                self._remove_line(self.active_line)
                self.active_line = None
            return
        if self.active_line is None:
            self.active_line = self._append_line(interim=True)
        self.active_line.source_label.setText(cleaned)
        self.active_line.translation_label.setText((translation or "").strip())

    def on_commit_placeholder(self, segment_id: int, text: str) -> Optional[SubtitleLine]:
        cleaned = (text or "").strip()
        if not cleaned:
            return None
        if self.active_line is not None:
            line = self.active_line
            self.active_line = None
        else:
            line = self._append_line(interim=False)
        line.segment_id = segment_id
        line.is_interim = False
        line.source_label.setText(cleaned)
        line.source_label.setStyleSheet(f"color: {self.FINAL_COLOR};")
        line.translation_label.setText(self.PENDING_TRANSLATION)
        return line

    def on_commit_resolved(self, handle: Optional[SubtitleLine], translated_text: str) -> None:
        if handle is None or handle.is_removed:
            return
        handle.translation_label.setText((translated_text or "").strip())

    def on_clear(self) -> None:
        for line in list(self.lines):
            self._remove_line(line)
        self.active_line = None

    def visible_lines(self) -> list[tuple[str, str]]:
        return [(line.source_label.text(), line.translation_label.text()) for line in self.lines]

    def set_listening(self, listening: bool) -> None:
        self._listening = listening
        self.start_stop_button.setText("Stop Listening" if listening else "Start Listening")

    def set_status(self, message: str) -> None:
        self.status_label.setText(message)

    def _append_line(self, interim: bool) -> SubtitleLine:
        frame = QFrame()
        frame.setObjectName("subtitleLine")
        layout = QVBoxLayout(frame)
        layout.setContentsMargins(10, 8, 10, 8)
        layout.setSpacing(2)

        source_label = QLabel("")
        source_label.setWordWrap(True)
        source_label.setAlignment(Qt.AlignmentFlag.AlignHCenter)
        source_label.setFont(self._make_font(self._font_size, bold=True))
        source_label.setStyleSheet(f"color: {self.INTERIM_COLOR if interim else self.FINAL_COLOR};")
        layout.addWidget(source_label)

        translation_label = QLabel("")
        translation_label.setWordWrap(True)
        translation_label.setAlignment(Qt.AlignmentFlag.AlignHCenter)
        translation_label.setFont(self._make_font(self._font_size))
        translation_label.setStyleSheet(f"color: {self.TRANSLATION_COLOR};")
        layout.addWidget(translation_label)

        line = SubtitleLine(
            frame=frame,
            source_label=source_label,
            translation_label=translation_label,
            is_interim=interim,
        )
        self.lines_layout.addWidget(frame)
        self.lines.append(line)
        self._prune_lines()
        return line

    def _prune_lines(self) -> None:
        while len(self.lines) > self._max_lines:
            removed = self.lines[0]
            self._remove_line(removed)
            if removed is self.active_line:
                self.active_line = None

    def _remove_line(self, line: SubtitleLine) -> None:
        line.is_removed = True
        if line in self.lines:
            self.lines.remove(line)
        self.lines_layout.removeWidget(line.frame)
        line.frame.deleteLater()

    def _build_ui(self) -> None:
        root = QVBoxLayout(self)
        root.setContentsMargins(6, 6, 6, 6)

        panel = QFrame()
        panel.setObjectName("overlayPanel")
        root.addWidget(panel)

        layout = QVBoxLayout(panel)
        layout.setContentsMargins(12, 12, 12, 12)
        layout.setSpacing(8)

        controls = QHBoxLayout()
        controls.setSpacing(6)
        layout.addLayout(controls)

        self.start_stop_button = QPushButton("Start Listening")
        self.start_stop_button.clicked.connect(self._on_start_stop_clicked)
        controls.addWidget(self.start_stop_button)

        clear_button = QPushButton("Clear")
        clear_button.clicked.connect(self.clear_requested.emit)
        controls.addWidget(clear_button)

        minimize_button = QPushButton("Minimize")
        minimize_button.clicked.connect(self.showMinimized)
        controls.addWidget(minimize_button)
        controls.addStretch(1)

        self.lines_layout = QVBoxLayout()
        self.lines_layout.setSpacing(12)
        layout.addLayout(self.lines_layout)
        layout.addStretch(1)

        self.status_label = QLabel("Microphone off")
        status_row = QHBoxLayout()
        status_row.addWidget(self.status_label)
        status_row.addStretch(1)
        self.size_grip = QSizeGrip(panel)
        status_row.addWidget(self.size_grip, alignment=Qt.AlignmentFlag.AlignBottom | Qt.AlignmentFlag.AlignRight)
        layout.addLayout(status_row)

    def _apply_window_style(self) -> None:
        self.setWindowTitle("Live Translator")
        self.setWindowFlags(
            Qt.WindowType.FramelessWindowHint
            | Qt.WindowType.WindowStaysOnTopHint
            | Qt.WindowType.Tool
        )
        self.setAttribute(Qt.WidgetAttribute.WA_TranslucentBackground, True)
        self.setAttribute(Qt.WidgetAttribute.WA_ShowWithoutActivating, True)
        self.setMinimumSize(600, 260)
        self.resize(980, 520)

        self.setStyleSheet(
            """
            #overlayPanel {
                background-color: rgba(28, 28, 28, 180);
                border: 1px solid rgba(255, 255, 255, 48);
                border-radius: 12px;
            }
            #subtitleLine {
                background-color: rgba(0, 0, 0, 128);
                border-radius: 8px;
            }
            QLabel {
                color: white;
            }
            QPushButton {
                background-color: rgba(70, 70, 70, 220);
                color: white;
                border: 1px solid rgba(255, 255, 255, 50);
                border-radius: 8px;
                padding: 6px 9px;
            }
            QPushButton:hover {
                background-color: rgba(88, 88, 88, 220);
            }
            """
        )

    def _on_start_stop_clicked(self) -> None:
        next_state = not self._listening
        self.set_listening(next_state)
        self.toggle_listening.emit(next_state)

    def mousePressEvent(self, event) -> None:  # noqa: N802 - Qt override naming
        if event.button() == Qt.MouseButton.LeftButton:
            local_pos = event.position().toPoint()
            if local_pos.y() <= self.DRAG_ZONE_HEIGHT:
                self._drag_offset = event.globalPosition().toPoint() - self.frameGeometry().topLeft()
                event.accept()

    def mouseMoveEvent(self, event) -> None:  # noqa: N802 - Qt override naming
        if self._drag_offset is not None and event.buttons() & Qt.MouseButton.LeftButton:
            self.move(event.globalPosition().toPoint() - self._drag_offset)
            event.accept()

    def mouseReleaseEvent(self, event) -> None:  # noqa: N802 - Qt override naming
        self._drag_offset = None
        event.accept()

    @staticmethod
    def _make_font(point_size: int, bold: bool = False) -> QFont:
        font = QFont()
        font.setPointSize(point_size)
        font.setBold(bold)
        return font
