"""
The voice-linked scheduled event whose name shows what is on air.
"""

import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import discord

from config import DEFAULT_EVENT_NAME, EVENT_DESCRIPTION, EVENT_DURATION_SECONDS, EVENT_NAME_MAX_LENGTH
from errors import EventGoneError, EventPublisherError
from models import ManagedEventHandle
from utils import truncate

logger = logging.getLogger(__name__)

_STATUS_NAMES = {1: "scheduled", 2: "active", 3: "completed", 4: "cancelled"}
MISSING_PERMISSIONS = 50013
UNKNOWN_SCHEDULED_EVENT = 10070


class EventNamePublisher(ABC):
    """Find-or-create and rename operations on the external event entity."""

    @abstractmethod
    async def find_owned_active_event(self, venue: Any) -> Optional[ManagedEventHandle]:
        raise NotImplementedError

    @abstractmethod
    async def create_event(self, venue: Any, initial_name: str) -> ManagedEventHandle:
        raise NotImplementedError

    @abstractmethod
    async def rename(self, handle: ManagedEventHandle, name: str) -> ManagedEventHandle:
        raise NotImplementedError

    @abstractmethod
    async def refresh(self, handle: ManagedEventHandle) -> ManagedEventHandle:
        raise NotImplementedError

    @abstractmethod
    async def start(self, handle: ManagedEventHandle) -> ManagedEventHandle:
        raise NotImplementedError


class DiscordEventPublisher(EventNamePublisher):
    """Guild scheduled events through discord.py, owned by the bot user."""

    def __init__(self, client: discord.Client):
        self.client = client
        self._events: Dict[int, discord.ScheduledEvent] = {}

    def _to_handle(self, event: discord.ScheduledEvent) -> ManagedEventHandle:
        self._events[event.id] = event
        status_value = getattr(event.status, "value", event.status)
        start_ts = event.start_time.timestamp() if event.start_time else None
        return ManagedEventHandle(
            event_id=event.id,
            name=event.name,
            status=_STATUS_NAMES.get(status_value, str(status_value)),
            start_ts=start_ts,
        )

    def _wrap(self, error: discord.HTTPException, action: str) -> EventPublisherError:
        if isinstance(error, discord.NotFound) or error.code == UNKNOWN_SCHEDULED_EVENT:
            return EventGoneError(f"Scheduled event is gone ({action})")
        if error.code == MISSING_PERMISSIONS:
            logger.error("Bot lacks 'Manage Events' permission (%s)", action)
        return EventPublisherError(f"Scheduled event {action} failed: {error}")

    async def find_owned_active_event(self, venue: Any) -> Optional[ManagedEventHandle]:
        bot_id = self.client.user.id if self.client.user else None
        try:
            events = await venue.guild.fetch_scheduled_events()
        except discord.HTTPException as error:
            raise self._wrap(error, "lookup") from error

        for event in events:
            handle = self._to_handle(event)
            if event.creator_id == bot_id and event.channel_id == venue.id and not handle.is_terminal:
                logger.info("Found existing event %r (id=%s, status=%s)", handle.name, handle.event_id, handle.status)
                return handle
        return None

    async def create_event(self, venue: Any, initial_name: str) -> ManagedEventHandle:
        start_time = datetime.now(timezone.utc) + timedelta(seconds=5)
        try:
            event = await venue.guild.create_scheduled_event(
                name=truncate(initial_name, EVENT_NAME_MAX_LENGTH),
                start_time=start_time,
                end_time=start_time + timedelta(seconds=EVENT_DURATION_SECONDS),
                channel=venue,
                entity_type=discord.EntityType.voice,
                privacy_level=discord.PrivacyLevel.guild_only,
                description=EVENT_DESCRIPTION,
            )
        except discord.HTTPException as error:
            raise self._wrap(error, "create") from error
        logger.info("Created event %r (id=%s)", event.name, event.id)
        return self._to_handle(event)

    async def _event_for(self, handle: ManagedEventHandle) -> discord.ScheduledEvent:
        event = self._events.get(handle.event_id)
        if event is None:
            return await self._fetch(handle)
        return event

    async def _fetch(self, handle: ManagedEventHandle) -> discord.ScheduledEvent:
        cached = self._events.get(handle.event_id)
        guild = cached.guild if cached is not None else None
        if guild is None:
            raise EventGoneError(f"No guild known for event {handle.event_id}")
        try:
            event = await guild.fetch_scheduled_event(handle.event_id)
        except discord.HTTPException as error:
            self._events.pop(handle.event_id, None)
            raise self._wrap(error, "refresh") from error
        self._events[event.id] = event
        return event

    async def rename(self, handle: ManagedEventHandle, name: str) -> ManagedEventHandle:
        event = await self._event_for(handle)
        try:
            event = await event.edit(name=name)
        except discord.HTTPException as error:
            raise self._wrap(error, "rename") from error
        return self._to_handle(event)

    async def refresh(self, handle: ManagedEventHandle) -> ManagedEventHandle:
        return self._to_handle(await self._fetch(handle))

    async def start(self, handle: ManagedEventHandle) -> ManagedEventHandle:
        event = await self._event_for(handle)
        try:
            event = await event.start()
        except discord.HTTPException as error:
            raise self._wrap(error, "start") from error
        return self._to_handle(event)


class ManagedEvent:
    """
    Cached reference to the managed event.

    The handle is never assumed valid: it is re-resolved (find, else create)
    whenever it is missing or terminal, and a rename that hits a vanished
    event is retried once against a freshly resolved handle.
    """

    def __init__(
        self,
        publisher: Optional[EventNamePublisher],
        venue: Any = None,
        initial_name: Optional[Callable[[], str]] = None,
    ):
        self.publisher = publisher
        self.venue = venue
        self.initial_name = initial_name or (lambda: DEFAULT_EVENT_NAME)
        self.handle: Optional[ManagedEventHandle] = None

    @property
    def enabled(self) -> bool:
        return self.publisher is not None and self.venue is not None

    @property
    def name(self) -> Optional[str]:
        return self.handle.name if self.handle is not None else None

    async def ensure(self) -> Optional[ManagedEventHandle]:
        if not self.enabled:
            return None
        if self.handle is not None and not self.handle.is_terminal:
            return self.handle

        self.handle = None
        try:
            handle = await self.publisher.find_owned_active_event(self.venue)
            if handle is None:
                logger.info("No suitable existing event found; creating one")
                handle = await self.publisher.create_event(self.venue, self.initial_name())
            self.handle = handle
            await self._start_if_due()
        except EventPublisherError as error:
            logger.error("Error finding or creating the managed event: %s", error)
            return None
        return self.handle

    async def _start_if_due(self) -> None:
        handle = self.handle
        if handle is None or handle.status != "scheduled":
            return
        if handle.start_ts is not None and handle.start_ts > time.time():
            return
        try:
            self.handle = await self.publisher.start(handle)
            logger.info("Event %s set to ACTIVE", handle.event_id)
        except EventGoneError:
            self.handle = None
        except EventPublisherError as error:
            logger.warning("Could not set event %s active: %s", handle.event_id, error)

    async def set_name(self, name: str) -> bool:
        """Rename the event. Returns False when the name could not be applied."""
        final_name = truncate(name, EVENT_NAME_MAX_LENGTH)
        if not final_name:
            logger.warning("Refusing to set an empty event name")
            return False
        if self.handle is not None and not self.handle.is_terminal and self.handle.name == final_name:
            logger.debug("Event name %r already set; skipping update", final_name)
            return True

        for attempt in (1, 2):
            handle = await self.ensure()
            if handle is None:
                return False
            if handle.name == final_name:
                return True
            try:
                handle = await self.publisher.refresh(handle)
                if handle.is_terminal:
                    logger.warning("Event %s is %s; re-resolving", handle.event_id, handle.status)
                    self.handle = None
                    continue
                if handle.name != final_name:
                    logger.info("Updating event name from %r to %r", handle.name, final_name)
                    handle = await self.publisher.rename(handle, final_name)
                self.handle = handle
                await self._start_if_due()
                return True
            except EventGoneError:
                logger.warning("Managed event vanished (attempt %s); clearing reference", attempt)
                self.handle = None
            except EventPublisherError as error:
                logger.error("Error updating event name: %s", error)
                return False
        return False
