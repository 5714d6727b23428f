"""
WhatsApp Client - Selenium-Based WhatsApp Web Sessions
=======================================================

One Chrome profile per agent holds the linked-device credentials, so a
restarted browser comes back logged in. Selenium is blocking: every driver
call runs in a worker thread and a poll task turns page changes into
session events.
"""

import asyncio
import logging
import time
import random
import shutil
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from selenium import webdriver
from selenium.webdriver.common.by import By
from selenium.webdriver.common.keys import Keys
from selenium.webdriver.chrome.service import Service as ChromeService
from selenium.webdriver.support.ui import WebDriverWait
from selenium.webdriver.support import expected_conditions as EC
from selenium.common.exceptions import (
    NoSuchElementException,
    TimeoutException,
    WebDriverException,
    StaleElementReferenceException,
)
from webdriver_manager.chrome import ChromeDriverManager

from .session_client import SessionClient
from ..config import SessionSettings, get_settings
from ...domain.events import (
    AckEvent,
    DisconnectReason,
    EventKind,
    InboundMessage,
    MessageKind,
    QrEvent,
    SessionState,
    StatusEvent,
)

logger = logging.getLogger(__name__)

WHATSAPP_WEB_URL = "https://web.whatsapp.com/"

# Message ids remembered per session for dedup and tick tracking
MAX_TRACKED_MESSAGES = 5000


class WhatsAppClientError(Exception):
    """Base exception for WhatsApp client errors."""
    pass


class WhatsAppBlockedError(WhatsAppClientError):
    """Raised when WhatsApp shows blocking/warning indicators."""
    pass


# ── Page parsing helpers ───────────────────────────────────────────

ACK_LABELS = {
    "pending": 1,
    "sent": 2,
    "delivered": 3,
    "read": 4,
}

ACK_ICONS = {
    "msg-time": 1,
    "msg-check": 2,
    "msg-dblcheck": 3,
}


def parse_data_id(data_id: str) -> Optional[Tuple[bool, str, str]]:
    """
    Split a message row data-id into (from_me, remote_address, message_id).

    'false_5551234@c.us_3EB0C767D26A' -> (False, '5551234@c.us', '3EB0C767D26A')
    Group rows carry the participant as a fourth part, which is dropped.
    """
    if not data_id:
        return None
    parts = data_id.split("_")
    if len(parts) < 3 or parts[0] not in ("true", "false") or "@" not in parts[1]:
        return None
    return parts[0] == "true", parts[1], parts[2]


def parse_pre_plain_text(pre_text: str) -> Optional[str]:
    """'[10:30, 18/10/2026] Maria Lopez: ' -> 'Maria Lopez'"""
    if not pre_text or "]" not in pre_text:
        return None
    name = pre_text.split("]", 1)[1].strip()
    if name.endswith(":"):
        name = name[:-1].strip()
    return name or None


def ack_from_status(aria_label: Optional[str], icon: Optional[str]) -> Optional[int]:
    """Map a message status indicator to a transport ack code (1-4)."""
    if aria_label:
        code = ACK_LABELS.get(aria_label.strip().lower())
        if code:
            return code
    if icon:
        return ACK_ICONS.get(icon)
    return None


def parse_own_wid(raw: Optional[str]) -> Optional[str]:
    """'"5511999887766:12@c.us"' -> '5511999887766'"""
    if not raw:
        return None
    wid = raw.strip().strip('"')
    number = wid.split("@", 1)[0].split(":", 1)[0]
    return number or None


def remember(store: OrderedDict, key: str, value=None, limit: int = MAX_TRACKED_MESSAGES) -> None:
    """Insert or refresh a key, evicting the oldest entries past the limit."""
    store[key] = value
    store.move_to_end(key)
    while len(store) > limit:
        store.popitem(last=False)


@dataclass
class MessageSnapshot:
    """One message row as read from the page."""
    data_id: str
    from_me: bool
    remote_address: str
    message_id: str
    kind: MessageKind
    text: str
    sender_name: Optional[str]
    ack: Optional[int]


class WhatsAppWebDriver:
    """
    Blocking Selenium operations on one WhatsApp Web tab.
    """

    # UPDATED CSS Selectors - WhatsApp Web 2024/2025
    # These use more robust attribute-based selectors
    SELECTORS = {
        "qr_code": "div[data-ref]",
        "search_box": 'div[contenteditable="true"][data-tab="3"]',
        "message_input": 'div[contenteditable="true"][data-tab="10"]',
        "message_input_alt": 'footer div[contenteditable="true"]',
        "message_row": "div[data-id]",
        "message_meta": "div[data-pre-plain-text]",
        "status_icon": 'span[data-icon^="msg-"]',
        "unread_badge": 'span[aria-label*="unread message"]',
        "chat_title": "header span[title]",
        "attach_button": 'span[data-icon="plus"], span[data-icon="attach-menu-plus"]',
        "file_input": 'input[type="file"]',
        "media_caption": 'div[contenteditable="true"][data-tab="10"]',
        "media_send": 'span[data-icon="send"]',
        "menu_button": 'span[data-icon="menu"]',
        "logout_item": 'div[aria-label="Log out"]',
    }

    MEDIA_SELECTORS = [
        (MessageKind.STICKER, 'img[src^="blob:"][alt=""][draggable="false"][class*="sticker"]'),
        (MessageKind.AUDIO, 'span[data-icon="audio-play"], span[data-icon="ptt-status"]'),
        (MessageKind.VIDEO, 'span[data-icon="media-play"], span[data-icon="video-pip"]'),
        (MessageKind.DOCUMENT, 'span[data-icon^="document"], div[title^="Download"]'),
        (MessageKind.IMAGE, 'img[src^="blob:"]'),
    ]

    TEXT_SELECTORS = [
        "span.selectable-text.copyable-text > span",
        "span.selectable-text.copyable-text",
        "span.selectable-text > span",
        "span.selectable-text",
        'span[dir="ltr"]',
    ]

    BLOCK_INDICATORS = [
        "temporarily banned",
        "account is temporarily",
        "verify your phone",
        "unusual activity",
    ]

    def __init__(self, profile_dir: Path, headless: bool = True):
        self.profile_dir = Path(profile_dir)
        self.headless = headless
        self.driver: Optional[webdriver.Chrome] = None

    def open(self) -> None:
        """Launch Chrome on the agent profile and load WhatsApp Web."""
        self.profile_dir.mkdir(parents=True, exist_ok=True)
        self.driver = self._create_driver()
        self.driver.get(WHATSAPP_WEB_URL)
        logger.info(f"Opened WhatsApp Web with profile {self.profile_dir}")

    def _create_driver(self) -> webdriver.Chrome:
        """Create and configure Chrome WebDriver."""
        options = webdriver.ChromeOptions()

        if self.headless:
            options.add_argument("--headless=new")
            options.add_argument("--window-size=1920,1080")
            # WhatsApp Web refuses unknown headless agents
            options.add_argument(
                "user-agent=Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
            )
        else:
            options.add_argument("--start-maximized")

        options.add_argument("--disable-gpu")
        options.add_argument("--no-sandbox")
        options.add_argument("--disable-dev-shm-usage")
        options.add_argument(f"--user-data-dir={self.profile_dir.resolve()}")

        service = ChromeService(ChromeDriverManager().install())
        return webdriver.Chrome(service=service, options=options)

    def _random_delay(self, min_s: float = 0.3, max_s: float = 1.0) -> None:
        """Add human-like random delay."""
        time.sleep(random.uniform(min_s, max_s))

    # ── Connection state ───────────────────────────────────────────

    def is_alive(self) -> bool:
        if self.driver is None:
            return False
        try:
            _ = self.driver.title
            return True
        except WebDriverException:
            return False

    def is_logged_in(self) -> bool:
        return bool(self.driver.find_elements(By.CSS_SELECTOR, self.SELECTORS["search_box"]))

    def read_qr(self) -> Optional[str]:
        """Current QR payload rendered by the login screen, if any."""
        elements = self.driver.find_elements(By.CSS_SELECTOR, self.SELECTORS["qr_code"])
        for element in elements:
            try:
                payload = element.get_attribute("data-ref")
            except StaleElementReferenceException:
                continue
            if payload:
                return payload
        return None

    def own_phone_number(self) -> Optional[str]:
        raw = self.driver.execute_script(
            "return window.localStorage.getItem('last-wid-md')"
            " || window.localStorage.getItem('last-wid');"
        )
        return parse_own_wid(raw)

    def check_for_blocks(self) -> bool:
        """Check page for blocking/warning indicators."""
        page_text = self.driver.page_source.lower()
        for indicator in self.BLOCK_INDICATORS:
            if indicator in page_text:
                logger.error(f"Block indicator detected: {indicator}")
                return True
        return False

    # ── Chats ──────────────────────────────────────────────────────

    def _find_message_input(self):
        """Find the message input box with multiple fallback selectors."""
        for key in ("message_input", "message_input_alt"):
            try:
                return self.driver.find_element(By.CSS_SELECTOR, self.SELECTORS[key])
            except NoSuchElementException:
                continue
        return None

    def open_chat(self, contact_id: str) -> bool:
        """Open chat with a phone number or group id through the search box."""
        if self.check_for_blocks():
            raise WhatsAppBlockedError("WhatsApp blocking detected")

        try:
            search_box = self.driver.find_element(By.CSS_SELECTOR, self.SELECTORS["search_box"])
        except NoSuchElementException:
            logger.error("Could not find chat search box")
            return False

        search_box.click()
        search_box.send_keys(Keys.CONTROL + "a")
        search_box.send_keys(Keys.BACKSPACE)
        self._random_delay(0.2, 0.5)

        for char in contact_id:
            search_box.send_keys(char)
            self._random_delay(0.03, 0.1)

        time.sleep(1.5)
        search_box.send_keys(Keys.ENTER)

        try:
            WebDriverWait(self.driver, 10).until(
                EC.presence_of_element_located(
                    (By.CSS_SELECTOR, self.SELECTORS["message_input_alt"])
                )
            )
        except TimeoutException:
            logger.warning(f"Could not verify chat opened for: {contact_id}")
            return False

        logger.debug(f"Chat opened: {contact_id}")
        return True

    def send_text(self, contact_id: str, text: str) -> Optional[str]:
        if not self.open_chat(contact_id):
            raise WhatsAppClientError(f"Could not open chat with {contact_id}")

        input_box = self._find_message_input()
        if not input_box:
            raise WhatsAppClientError("Could not find message input box")

        input_box.click()
        # Newlines would send early; shift+enter keeps them in one message
        for index, line in enumerate(text.split("\n")):
            if index:
                input_box.send_keys(Keys.SHIFT + Keys.ENTER)
            input_box.send_keys(line)
        input_box.send_keys(Keys.ENTER)

        logger.info(f"Sent message to {contact_id}: {text[:50]}...")
        return self._last_outgoing_id()

    def send_file(self, contact_id: str, path: Path, caption: str = "") -> Optional[str]:
        if not self.open_chat(contact_id):
            raise WhatsAppClientError(f"Could not open chat with {contact_id}")

        self.driver.find_element(By.CSS_SELECTOR, self.SELECTORS["attach_button"]).click()
        self._random_delay()
        file_input = self.driver.find_element(By.CSS_SELECTOR, self.SELECTORS["file_input"])
        file_input.send_keys(str(Path(path).resolve()))

        send_button = WebDriverWait(self.driver, 20).until(
            EC.element_to_be_clickable((By.CSS_SELECTOR, self.SELECTORS["media_send"]))
        )
        if caption:
            caption_boxes = self.driver.find_elements(By.CSS_SELECTOR, self.SELECTORS["media_caption"])
            if caption_boxes:
                caption_boxes[0].send_keys(caption)
        send_button.click()

        logger.info(f"Sent file {Path(path).name} to {contact_id}")
        time.sleep(1)
        return self._last_outgoing_id()

    def _last_outgoing_id(self) -> Optional[str]:
        rows = self.driver.find_elements(By.CSS_SELECTOR, 'div[data-id^="true_"]')
        if not rows:
            return None
        parsed = parse_data_id(rows[-1].get_attribute("data-id") or "")
        return parsed[2] if parsed else None

    # ── Reading messages ───────────────────────────────────────────

    def _message_kind(self, element) -> MessageKind:
        for kind, selector in self.MEDIA_SELECTORS:
            if element.find_elements(By.CSS_SELECTOR, selector):
                return kind
        return MessageKind.TEXT

    def _extract_text(self, element) -> str:
        for selector in self.TEXT_SELECTORS:
            for text_el in element.find_elements(By.CSS_SELECTOR, selector):
                text = text_el.text.strip()
                if text:
                    return text
        return ""

    def _read_status(self, element) -> Optional[int]:
        icons = element.find_elements(By.CSS_SELECTOR, self.SELECTORS["status_icon"])
        if not icons:
            return None
        icon = icons[-1]
        label = icon.get_attribute("aria-label")
        ack = ack_from_status(label, icon.get_attribute("data-icon"))
        # Blue double check has the same icon as delivered
        if ack == 3 and "read" in (icon.get_attribute("class") or "").lower():
            return 4
        return ack

    def read_open_chat(self) -> List[MessageSnapshot]:
        """Every message row currently rendered in the open chat."""
        snapshots = []
        for row in self.driver.find_elements(By.CSS_SELECTOR, self.SELECTORS["message_row"]):
            try:
                data_id = row.get_attribute("data-id") or ""
                parsed = parse_data_id(data_id)
                if not parsed:
                    continue
                from_me, remote, message_id = parsed

                sender_name = None
                metas = row.find_elements(By.CSS_SELECTOR, self.SELECTORS["message_meta"])
                if metas:
                    sender_name = parse_pre_plain_text(metas[0].get_attribute("data-pre-plain-text") or "")

                snapshots.append(MessageSnapshot(
                    data_id=data_id,
                    from_me=from_me,
                    remote_address=remote,
                    message_id=message_id,
                    kind=self._message_kind(row),
                    text=self._extract_text(row),
                    sender_name=sender_name,
                    ack=self._read_status(row) if from_me else None,
                ))
            except StaleElementReferenceException:
                continue
        return snapshots

    def current_chat_title(self) -> Optional[str]:
        titles = self.driver.find_elements(By.CSS_SELECTOR, self.SELECTORS["chat_title"])
        return titles[0].get_attribute("title") if titles else None

    def read_unread_chats(self) -> List[Tuple[Optional[str], List[MessageSnapshot]]]:
        """Open each chat with an unread badge and read it. Returns (title, rows) per chat."""
        results = [(self.current_chat_title(), self.read_open_chat())]
        badges = self.driver.find_elements(By.CSS_SELECTOR, self.SELECTORS["unread_badge"])
        for badge in badges:
            try:
                row = badge.find_element(By.XPATH, './ancestor::div[@role="listitem"]')
                row.click()
            except (NoSuchElementException, StaleElementReferenceException):
                continue
            self._random_delay(0.5, 1.0)
            results.append((self.current_chat_title(), self.read_open_chat()))
        return results

    # ── Teardown ───────────────────────────────────────────────────

    def logout(self) -> None:
        """Log out through the app menu."""
        self.driver.find_element(By.CSS_SELECTOR, self.SELECTORS["menu_button"]).click()
        self._random_delay()
        self.driver.find_element(By.CSS_SELECTOR, self.SELECTORS["logout_item"]).click()
        confirm = WebDriverWait(self.driver, 10).until(
            EC.element_to_be_clickable(
                (By.XPATH, '//div[@role="dialog"]//button[.//div[text()="Log out"] or text()="Log out"]')
            )
        )
        confirm.click()
        logger.info(f"Logged out WhatsApp Web session for profile {self.profile_dir}")

    def quit(self) -> None:
        """Close browser and cleanup."""
        if self.driver is None:
            return
        try:
            self.driver.quit()
            logger.info("Browser closed")
        finally:
            self.driver = None


class SeleniumSessionClient(SessionClient):
    """
    Session client backed by a Chrome WhatsApp Web tab.

    Poll cycle: QR / login detection until linked, then unread chats and
    outbound delivery ticks. A session that is not linked within
    qr_timeout_seconds closes itself with reason 408.
    """

    def __init__(self, agent_id: int, credential_dir: Path, settings: Optional[SessionSettings] = None):
        super().__init__(agent_id, credential_dir)
        self._settings = settings or get_settings().session
        self._web = WhatsAppWebDriver(self.credential_dir, headless=self._settings.headless)
        self._poll_task: Optional[asyncio.Task] = None
        self._closing = False
        self._phone: Optional[str] = None
        self._seen_ids: OrderedDict = OrderedDict()
        self._acks: OrderedDict = OrderedDict()

    @property
    def phone_number(self) -> Optional[str]:
        return self._phone

    async def connect(self) -> None:
        await asyncio.to_thread(self._web.open)
        if self._closing:
            # close() ran while Chrome was starting
            await asyncio.to_thread(self._web.quit)
            return
        self._poll_task = asyncio.create_task(
            self._poll_loop(), name=f"whatsapp-poll-{self.agent_id}"
        )

    async def _poll_loop(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.qr_timeout_seconds
        last_qr = None
        logged_in = False

        while not self._closing:
            try:
                if not await asyncio.to_thread(self._web.is_alive):
                    await self._closed(DisconnectReason.CONNECTION_CLOSED)
                    return

                if not logged_in:
                    if await asyncio.to_thread(self._web.is_logged_in):
                        logged_in = True
                        self._phone = await asyncio.to_thread(self._web.own_phone_number)
                        await self._remember_visible_messages()
                        await self._emit(EventKind.STATUS, StatusEvent(
                            SessionState.LOGGED_IN, phone_number=self._phone
                        ))
                    else:
                        qr = await asyncio.to_thread(self._web.read_qr)
                        if qr and qr != last_qr:
                            last_qr = qr
                            await self._emit(EventKind.QR, QrEvent(qr))
                        if loop.time() > deadline:
                            logger.info(f"QR not scanned in time for agent {self.agent_id}")
                            await self._closed(DisconnectReason.TIMED_OUT)
                            return
                else:
                    if await asyncio.to_thread(self._web.read_qr):
                        # Back on the login screen: the phone unlinked this device
                        await self._emit(EventKind.STATUS, StatusEvent(
                            SessionState.DEVICE_DISCONNECTED, reason=DisconnectReason.LOGGED_OUT
                        ))
                        await self._shutdown_driver()
                        return
                    await self._scan_chats()
            except WebDriverException as e:
                logger.warning(f"WhatsApp Web session lost for agent {self.agent_id}: {e.msg}")
                await self._closed(DisconnectReason.CONNECTION_CLOSED)
                return
            except Exception as e:
                # chromedriver gone: urllib3 / connection errors, not WebDriverException
                logger.exception(f"WhatsApp Web poll failed for agent {self.agent_id}: {e}")
                await self._closed(DisconnectReason.CONNECTION_CLOSED)
                return

            await asyncio.sleep(self._settings.poll_interval_seconds)

    async def _closed(self, reason: DisconnectReason) -> None:
        if self._closing:
            return
        await self._emit(EventKind.STATUS, StatusEvent(SessionState.SESSION_CLOSED, reason=reason))
        await self._shutdown_driver()

    async def _remember_visible_messages(self) -> None:
        # History already on screen at login is not new traffic
        for _, rows in await asyncio.to_thread(self._web.read_unread_chats):
            for row in rows:
                remember(self._seen_ids, row.data_id)
                if row.from_me and row.ack:
                    remember(self._acks, row.message_id, row.ack)

    async def _scan_chats(self) -> None:
        chats = await asyncio.to_thread(self._web.read_unread_chats)
        for title, rows in chats:
            for row in rows:
                if row.from_me:
                    if row.ack and self._acks.get(row.message_id) != row.ack:
                        remember(self._acks, row.message_id, row.ack)
                        await self._emit(EventKind.ACK, AckEvent(
                            message_id=row.message_id,
                            ack=row.ack,
                            remote_address=row.remote_address,
                        ))
                    continue
                if row.data_id in self._seen_ids:
                    continue
                remember(self._seen_ids, row.data_id)
                is_media = row.kind != MessageKind.TEXT
                await self._emit(EventKind.MESSAGE, InboundMessage(
                    message_id=row.message_id,
                    remote_address=row.remote_address,
                    from_me=False,
                    kind=row.kind,
                    text="" if is_media else row.text,
                    caption=row.text if is_media else None,
                    push_name=row.sender_name,
                    profile_name=title,
                    group_name=title if row.remote_address.endswith("@g.us") else None,
                ))

    async def send_text(self, address: str, text: str) -> Optional[str]:
        contact = address.split("@", 1)[0]
        return await asyncio.to_thread(self._web.send_text, contact, text)

    async def send_media(
        self,
        address: str,
        path: Path,
        caption: str = "",
        mime_type: Optional[str] = None,
    ) -> Optional[str]:
        if not Path(path).is_file():
            raise WhatsAppClientError(f"Media file not found: {path}")
        contact = address.split("@", 1)[0]
        return await asyncio.to_thread(self._web.send_file, contact, Path(path), caption)

    async def _stop_polling(self) -> None:
        self._closing = True
        task = self._poll_task
        if task and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _shutdown_driver(self) -> None:
        self._closing = True
        await asyncio.to_thread(self._web.quit)

    async def close(self) -> None:
        await self._stop_polling()
        await self._shutdown_driver()

    async def logout(self) -> None:
        await self._stop_polling()
        try:
            if await asyncio.to_thread(self._web.is_alive):
                await asyncio.to_thread(self._web.logout)
        finally:
            await self._shutdown_driver()


class SeleniumSessionClientFactory:
    """SessionClientFactory producing Selenium clients with shared settings."""

    def __init__(self, settings: Optional[SessionSettings] = None):
        self._settings = settings or get_settings().session

    def __call__(self, agent_id: int, credential_dir: Path) -> SeleniumSessionClient:
        return SeleniumSessionClient(agent_id, credential_dir, self._settings)


def clear_credential_store(credential_dir: Path) -> bool:
    """
    Delete an agent's saved session. Returns False if there was nothing to delete.
    Any other failure propagates.
    """
    try:
        shutil.rmtree(credential_dir)
    except FileNotFoundError:
        logger.debug(f"No saved session at {credential_dir}")
        return False
    logger.info(f"Session storage removed: {credential_dir}")
    return True
