"""Application entrypoint."""

from __future__ import annotations

import html
import logging
import sys

from chat_controller import ChatController
from chat_service import ConciergeChatService
from config import JsonConfigStore, load_configuration
from errors import ERROR_MESSAGES, PERMISSION_DENIED
from hotkey import PushToTalkHotkey
from models import ChatState, InputState, Message, MessageKind, ProductCard
from session_manager import SessionManager
from speech_capture import DashscopeSpeechBridge

try:
    from PySide6.QtCore import QObject, QUrl, Signal, Slot
    from PySide6.QtGui import QDesktopServices
    from PySide6.QtWidgets import (
        QApplication,
        QHBoxLayout,
        QInputDialog,
        QLabel,
        QLineEdit,
        QMenu,
        QMessageBox,
        QPushButton,
        QTextBrowser,
        QToolButton,
        QVBoxLayout,
        QWidget,
    )
except Exception as exc:  # pragma: no cover
    raise SystemExit(f"PySide6 is required to run the desktop app: {exc}")

try:
    from PySide6.QtTextToSpeech import QTextToSpeech
except Exception:  # pragma: no cover
    QTextToSpeech = None  # type: ignore

logger = logging.getLogger("concierge.app")

STATUS_TEXT = {
    InputState.RECORDING: "🎙️ Listening...",
    InputState.TRANSCRIBING: "Transcribing...",
    InputState.ERROR: "Microphone unavailable",
}


class UIBridge(QObject):
    """Runs callables on the Qt main thread, whichever thread emits."""

    invoke = Signal(object)

    def __init__(self) -> None:
        super().__init__()
        self.invoke.connect(self._run)

    @Slot(object)
    def _run(self, fn) -> None:  # noqa: ANN001
        fn()

    def dispatch(self, fn) -> None:  # noqa: ANN001
        self.invoke.emit(fn)


class QtSpeaker:
    def __init__(self) -> None:
        self._engine = QTextToSpeech() if QTextToSpeech is not None else None

    def speak(self, text: str) -> None:
        if self._engine is None:
            logger.debug("text to speech unavailable, not speaking reply")
            return
        self._engine.say(text)


SUGGESTION_SCHEME = "suggest"


def _link(url: str, text: str) -> str:
    return f"<a href='{html.escape(url)}'>{html.escape(text or url)}</a>"


def render_product(card: ProductCard, detailed: bool) -> str:
    parts = [f"<b>{html.escape(card.title or 'No title')}</b>"]
    if card.image_url:
        parts.append(f"<img src='{html.escape(card.image_url)}' width='120'>")
    if detailed and card.description:
        parts.append(html.escape(card.description))
    buttons = [b for b in (card.primary, card.secondary) if b is not None]
    if detailed and buttons:
        parts.append(" | ".join(_link(b.url, b.text) for b in buttons))
    elif card.page_url:
        parts.append(_link(card.page_url, "View"))
    return "<td valign='top'>" + "<br>".join(parts) + "</td>"


def render_message(message: Message) -> str:
    body = html.escape(message.body).replace("\n", "<br>")
    if message.is_user:
        return f"<p align='right'><b>You:</b> {body}</p>"
    if message.kind == MessageKind.WELCOME_HEADER:
        return f"<h3>{html.escape(message.title)}</h3><p>{body}</p>"
    if message.kind in (MessageKind.PROMPT_SUGGESTION, MessageKind.WELCOME_SUGGESTION):
        return f"<p><i>→ <a href='{SUGGESTION_SCHEME}:{message.id}'>{body}</a></i></p>"
    if message.kind in (MessageKind.PRODUCT_CARD, MessageKind.CAROUSEL):
        detailed = message.kind == MessageKind.PRODUCT_CARD
        cells = "".join(render_product(card, detailed) for card in message.products)
        return f"<table cellpadding='6'><tr>{cells}</tr></table>"
    sources = "".join(
        f"<br><small>[{s.citation_number}] {_link(s.url, s.title)}</small>"
        for s in message.sources
    )
    return f"<p><b>Concierge:</b> {body or '…'}{sources}</p>"


class ChatWindow(QWidget):
    def __init__(self) -> None:
        super().__init__()
        self.setWindowTitle("Brand Concierge")
        self.resize(520, 680)

        self.transcript = QTextBrowser()
        self.transcript.setOpenLinks(False)
        self.status = QLabel("")
        self.composer = QLineEdit()
        self.composer.setPlaceholderText("How can I help?")
        self.mic_button = QPushButton("🎙️")
        self.send_button = QPushButton("Send")
        self.settings_button = QToolButton()
        self.settings_button.setText("⚙")
        self.settings_button.setPopupMode(QToolButton.InstantPopup)

        row = QHBoxLayout()
        row.addWidget(self.composer, 1)
        row.addWidget(self.mic_button)
        row.addWidget(self.send_button)
        row.addWidget(self.settings_button)

        layout = QVBoxLayout()
        layout.addWidget(self.transcript, 1)
        layout.addWidget(self.status)
        layout.addLayout(row)
        self.setLayout(layout)


class App:
    def __init__(self) -> None:
        self.app = QApplication(sys.argv)
        self.config_store = JsonConfigStore()
        self.ui = UIBridge()
        self._last_error = ""
        self.window = ChatWindow()

        configuration = load_configuration(self.config_store)
        self.controller = ChatController(
            configuration=configuration,
            transport=ConciergeChatService(
                configuration=configuration,
                session_manager=SessionManager(self.config_store),
            ),
            speech=DashscopeSpeechBridge(config_store=self.config_store),
            speaker=QtSpeaker(),
            dispatch=self.ui.dispatch,
            on_update=self.render,
            on_error=self._on_error,
        )
        self.hotkey = PushToTalkHotkey(hotkey_name=self.config_store.get_hotkey())

        self.window.composer.textEdited.connect(self.controller.apply_text_change)
        self.window.composer.returnPressed.connect(self._send)
        self.window.send_button.clicked.connect(self._send)
        self.window.mic_button.clicked.connect(self._toggle_mic)
        self.window.transcript.anchorClicked.connect(self._open_link)
        self._setup_menu()
        self.controller.load_welcome_if_needed()
        self.render()

    def _setup_menu(self) -> None:
        menu = QMenu(self.window)
        menu.addAction("Set Server", self._set_server)
        menu.addAction("Set API Key", self._set_api_key)
        menu.addAction("Set Hotkey", self._set_hotkey)
        menu.addSeparator()
        menu.addAction("Quit", self.quit)
        self.window.settings_button.setMenu(menu)

    def _set_server(self) -> None:
        current = self.config_store.get_server()
        server, ok = QInputDialog.getText(None, "Server", "Concierge server host", text=current["server"])
        if not ok:
            return
        datastream, ok = QInputDialog.getText(None, "Datastream", "Datastream id", text=current["datastream"])
        if not ok:
            return
        self.config_store.set_server(server, datastream, current["surfaces"], current["ecid"])
        QMessageBox.information(None, "Saved", "Server saved. Restart app to apply.")

    def _set_api_key(self) -> None:
        value, ok = QInputDialog.getText(None, "API Key", "DashScope API Key")
        if not ok:
            return
        self.config_store.set_api_key(value)
        QMessageBox.information(None, "Saved", "API Key saved.")

    def _set_hotkey(self) -> None:
        value, ok = QInputDialog.getText(None, "Hotkey", "Use pynput key format, e.g. Key.alt_l")
        if not ok or not value:
            return
        self.config_store.set_hotkey(value)
        QMessageBox.information(None, "Saved", "Hotkey saved. Restart app to apply.")

    # ------------------------------------------------------------------
    # UI thread handlers
    # ------------------------------------------------------------------

    def _send(self) -> None:
        self._last_error = ""
        self.controller.send_message(is_user=True)

    def _toggle_mic(self) -> None:
        self.controller.toggle_mic(self.window.composer.cursorPosition())

    def _open_link(self, url: QUrl) -> None:
        if url.scheme() == SUGGESTION_SCHEME:
            self._last_error = ""
            self.controller.select_suggestion(url.path())
            return
        QDesktopServices.openUrl(url)

    def _on_error(self, code: str, message: str) -> None:
        logger.warning("%s: %s", code, message)
        self._last_error = f"⚠️ {ERROR_MESSAGES.get(code, message)}"

    def render(self) -> None:
        c = self.controller
        w = self.window
        w.transcript.setHtml("".join(render_message(m) for m in c.messages))
        w.transcript.verticalScrollBar().setValue(w.transcript.verticalScrollBar().maximum())
        if w.composer.text() != c.input_text:
            w.composer.setText(c.input_text)
        w.composer.setReadOnly(not c.composer_editable)
        w.send_button.setEnabled(c.send_enabled)
        w.mic_button.setEnabled(c.mic_enabled)
        w.mic_button.setText("⏹" if c.is_recording else "🎙️")
        if c.input_state in STATUS_TEXT:
            w.status.setText(STATUS_TEXT[c.input_state])
        elif c.chat_state == ChatState.PROCESSING:
            w.status.setText("Thinking...")
        else:
            w.status.setText(self._last_error)
        if c.show_permission_dialog:
            c.dismiss_permission_dialog()
            QMessageBox.warning(None, "Microphone", ERROR_MESSAGES[PERMISSION_DENIED])

    # ------------------------------------------------------------------
    # Hotkey handlers (pynput thread, forwarded to the UI thread)
    # ------------------------------------------------------------------

    def _on_hotkey_press(self) -> None:
        self.ui.dispatch(lambda: self.controller.start_recording(self.window.composer.cursorPosition()))

    def _on_hotkey_release(self) -> None:
        self.ui.dispatch(self.controller.complete_mic)

    def _on_hotkey_cancel(self) -> None:
        self.ui.dispatch(self.controller.cancel_mic)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run(self) -> int:
        try:
            self.hotkey.start(
                on_press=self._on_hotkey_press,
                on_release=self._on_hotkey_release,
                on_cancel=self._on_hotkey_cancel,
            )
        except Exception as exc:
            self.window.status.setText(f"Hotkey disabled: {exc}")
        self.window.show()
        return self.app.exec()

    def quit(self) -> None:
        self.hotkey.stop()
        self.controller.cancel_response()
        if self.controller.is_recording:
            self.controller.cancel_mic()
        self.app.quit()


def main() -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = App()
    return app.run()


if __name__ == "__main__":
    raise SystemExit(main())
