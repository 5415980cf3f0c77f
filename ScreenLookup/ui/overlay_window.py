from typing import Callable, List, Optional

from PyQt6.QtCore import QObject, Qt, QTimer, pyqtSignal
from PyQt6.QtGui import QBrush, QColor, QFont, QFontMetricsF, QKeySequence, QPen, QShortcut
from PyQt6.QtWidgets import QFrame, QGraphicsRectItem, QGraphicsScene, QGraphicsTextItem, QGraphicsView, \
    QGridLayout, QLabel, QWidget

from ScreenLookup.util.communication.ocr_protocol import RecognitionResult, WindowBounds
from ScreenLookup.util.config.configuration import Overlay, get_overlay_config
from ScreenLookup.util.logging_config import logger
from ScreenLookup.util.overlay.overlay_layout import LayoutSettings, TextPlacement, layout_observations

BOX_BORDER_COLOR = QColor(80, 160, 255, 160)
BOX_FILL_COLOR = QColor(0, 0, 0, 40)
TEXT_COLOR = QColor(0, 0, 0, 1)  # invisible but still selectable


class OverlayRenderer:
    """Turns a RecognitionResult into positioned, selectable text items.

    Every render replaces the previous items, so rendering the same result
    twice yields the same scene.
    """

    def __init__(self, scene: QGraphicsScene, settings: LayoutSettings = LayoutSettings(),
                 font: Optional[QFont] = None):
        self.scene = scene
        self.settings = settings
        self.font = QFont(font) if font is not None else QFont()
        self.placements: List[TextPlacement] = []

    def _font_at(self, size: float) -> QFont:
        font = QFont(self.font)
        # Floor so the rendered glyphs never exceed the fitted size.
        font.setPixelSize(max(1, int(size)))
        return font

    def measure(self, text: str, font_size: float) -> float:
        return QFontMetricsF(self._font_at(font_size)).horizontalAdvance(text)

    def clear(self) -> None:
        self.scene.clear()
        self.placements = []

    def render(self, result: RecognitionResult, width: float, height: float) -> List[TextPlacement]:
        self.clear()
        self.scene.setSceneRect(0, 0, width, height)
        self.placements = layout_observations(result.observations, width, height, self.measure, self.settings)
        for placement in self.placements:
            self.scene.addItem(self._make_item(placement))
        logger.debug(f"Rendered {len(self.placements)} of {len(result.observations)} observations "
                     f"onto {width}x{height}")
        return self.placements

    def _make_item(self, placement: TextPlacement) -> QGraphicsRectItem:
        rect = placement.rect
        box = QGraphicsRectItem(0, 0, rect.width, rect.height)
        box.setPos(rect.x, rect.y)
        box.setPen(QPen(BOX_BORDER_COLOR, 1))
        box.setBrush(QBrush(BOX_FILL_COLOR))
        if placement.rotation is not None:
            box.setTransformOriginPoint(0, 0)
            box.setRotation(placement.rotation)

        text = QGraphicsTextItem(placement.text, box)
        text.document().setDocumentMargin(0)
        text.setFont(self._font_at(placement.font_size))
        text.setDefaultTextColor(TEXT_COLOR)
        text.setTextInteractionFlags(Qt.TextInteractionFlag.TextSelectableByMouse)
        return box


class OverlayWindow(QWidget):
    """Frameless, translucent, always-on-top surface laid over the scanned window."""

    def __init__(self, overlay_config: Optional[Overlay] = None):
        super().__init__()
        self.overlay_config = overlay_config or get_overlay_config()
        self.result: Optional[RecognitionResult] = None

        self.setWindowTitle("ScreenLookup Overlay")
        self.setWindowFlags(Qt.WindowType.FramelessWindowHint |
                            Qt.WindowType.WindowStaysOnTopHint |
                            Qt.WindowType.Tool)
        self.setAttribute(Qt.WidgetAttribute.WA_TranslucentBackground, True)

        self.scene = QGraphicsScene(self)
        self.renderer = OverlayRenderer(self.scene, LayoutSettings.from_overlay_config(self.overlay_config))

        self.view = QGraphicsView(self.scene, self)
        self.view.setFrameShape(QFrame.Shape.NoFrame)
        self.view.setStyleSheet("background: transparent;")
        self.view.setHorizontalScrollBarPolicy(Qt.ScrollBarPolicy.ScrollBarAlwaysOff)
        self.view.setVerticalScrollBarPolicy(Qt.ScrollBarPolicy.ScrollBarAlwaysOff)
        self.view.setAlignment(Qt.AlignmentFlag.AlignLeft | Qt.AlignmentFlag.AlignTop)

        self.loading_label = QLabel("Scanning...", self)
        self.loading_label.setStyleSheet(
            "background: rgba(0, 0, 0, 180); color: white; padding: 4px 8px; border-radius: 4px;")
        self.loading_label.hide()

        self.error_label = QLabel("", self)
        self.error_label.setWordWrap(True)
        self.error_label.setStyleSheet(
            "background: rgba(180, 30, 30, 220); color: white; padding: 6px 10px; border-radius: 4px;")
        self.error_label.hide()

        self.error_timer = QTimer(self)
        self.error_timer.setSingleShot(True)
        self.error_timer.timeout.connect(self.clear_error)

        layout = QGridLayout(self)
        layout.setContentsMargins(0, 0, 0, 0)
        layout.addWidget(self.view, 0, 0)
        layout.addWidget(self.loading_label, 0, 0, Qt.AlignmentFlag.AlignTop | Qt.AlignmentFlag.AlignHCenter)
        layout.addWidget(self.error_label, 0, 0, Qt.AlignmentFlag.AlignTop | Qt.AlignmentFlag.AlignHCenter)

        self.escape_shortcut = QShortcut(QKeySequence(Qt.Key.Key_Escape), self)
        self.escape_shortcut.activated.connect(self.hide_overlay)

    def position_overlay(self, bounds: Optional[WindowBounds]) -> None:
        if bounds is None:
            return
        self.setGeometry(round(bounds.x), round(bounds.y), round(bounds.width), round(bounds.height))

    def render_results(self, result: RecognitionResult) -> None:
        self.result = result
        self._rerender()

    def _rerender(self) -> None:
        if self.result is None:
            return
        self.renderer.render(self.result, self.width(), self.height())

    def resizeEvent(self, event):
        super().resizeEvent(event)
        self._rerender()

    def show_overlay(self) -> None:
        self.show()
        self.raise_()
        self.activateWindow()

    def hide_overlay(self) -> None:
        self.hide()

    def toggle_overlay(self) -> None:
        if self.isVisible():
            self.hide_overlay()
        else:
            self.show_overlay()

    def set_loading(self, loading: bool) -> None:
        self.loading_label.setVisible(loading)
        if loading:
            self.loading_label.raise_()

    def show_error(self, message: str) -> None:
        logger.warning(f"Showing error on overlay: {message}")
        self.error_label.setText(message)
        self.error_label.show()
        self.error_label.raise_()
        self.show_overlay()
        self.error_timer.start(self.overlay_config.error_display_ms)

    def clear_error(self) -> None:
        self.error_timer.stop()
        self.error_label.hide()


class GuiDispatcher(QObject):
    """
    Runs callables on the GUI thread. Lives on the main thread and may be
    called from any thread, e.g. the bridge loop or the IPC listener.
    """
    _execute_on_gui_thread = pyqtSignal(object)

    def __init__(self):
        super().__init__()
        self._execute_on_gui_thread.connect(self._execute_callable)

    def _execute_callable(self, func):
        func()

    def __call__(self, func: Callable[[], None]) -> None:
        self._execute_on_gui_thread.emit(func)
