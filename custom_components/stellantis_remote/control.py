"""Remote command dispatch over the Stellantis MQTT broker.

One ``StellantisRemoteControl`` holds one persistent broker connection for a
customer. A background task owns the aiomqtt client and reads every incoming
message:

- command responses are matched to their waiter by correlation id
- vehicle events are handed to an optional listener

Several commands may be in flight at once. Waiters live in a dict that is only
touched from the event loop, without awaiting in between, so the publish path,
the reader and timeout expiry never interleave on it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from contextlib import suppress
import json
import logging
import ssl
from typing import Any

import aiomqtt

from .commands import CommandResponse, RemoteCommand, build_envelope, new_correlation_id
from .const import (
    COMMAND_TIMEOUT,
    MQTT_EVENT_TOPIC,
    MQTT_HOST,
    MQTT_KEEPALIVE,
    MQTT_PORT,
    MQTT_QOS,
    MQTT_REQUEST_TOPIC,
    MQTT_RESPONSE_TOPIC,
    MQTT_USERNAME,
)
from .exceptions import (
    CommandError,
    CommandTimeoutError,
    StellantisAuthenticationError,
    StellantisConnectionError,
)

_LOGGER = logging.getLogger(__name__)

# CONNACK codes for bad credentials and not authorized (MQTT 3.1.1 and 5)
AUTH_REJECTED_CODES = (4, 5, 134, 135)

EventListener = Callable[[str, dict[str, Any]], None]


class StellantisRemoteControl:
    """Persistent broker connection with correlation-id routed commands."""

    def __init__(
        self,
        customer_id: str,
        vins: Iterable[str],
        on_event: EventListener | None = None,
        command_timeout: float = COMMAND_TIMEOUT,
        host: str = MQTT_HOST,
        port: int = MQTT_PORT,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            customer_id: Customer id the command topics belong to
            vins: Vehicles whose event topics are subscribed
            on_event: Called with (vin, payload) for every vehicle event
            command_timeout: Seconds to wait for a correlated response
            host: Broker hostname
            port: Broker TLS port
        """
        self.customer_id = customer_id
        self.vins = list(vins)
        self.on_event = on_event
        self.command_timeout = command_timeout
        self.host = host
        self.port = port
        self._client: aiomqtt.Client | None = None
        self._access_token: str | None = None
        self._reader_task: asyncio.Task | None = None
        self._pending: dict[str, asyncio.Future[CommandResponse]] = {}
        self._connect_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        """True while the broker connection is up."""
        return self._client is not None

    @property
    def access_token(self) -> str | None:
        """Broker token of the current connection."""
        return self._access_token

    @property
    def pending_count(self) -> int:
        """Number of commands waiting for a response."""
        return len(self._pending)

    def _topics(self) -> list[str]:
        return [f"{MQTT_RESPONSE_TOPIC}{self.customer_id}/#"] + [
            f"{MQTT_EVENT_TOPIC}{vin}" for vin in self.vins
        ]

    async def connect(self, access_token: str) -> None:
        """Connect to the broker and subscribe.

        Returns once the handshake has completed. Concurrent callers share one
        connection. Subscription failures are logged and do not fail the
        connection.

        Raises:
            StellantisConnectionError: If the broker cannot be reached
        """
        async with self._connect_lock:
            if self.connected:
                return
            await self._async_connect(access_token)

    async def _async_connect(self, access_token: str) -> None:
        if self._reader_task is not None:
            await self.disconnect()

        # Creating the default context loads certificates from disk
        loop = asyncio.get_running_loop()
        tls_context = await loop.run_in_executor(None, ssl.create_default_context)

        ready: asyncio.Future[None] = loop.create_future()
        self._access_token = access_token
        self._reader_task = asyncio.ensure_future(
            self._reader_loop(access_token, tls_context, ready)
        )
        try:
            async with asyncio.timeout(self.command_timeout):
                await ready
        except TimeoutError as err:
            await self.disconnect()
            raise StellantisConnectionError(
                f"Timed out connecting to {self.host}:{self.port}"
            ) from err
        except StellantisConnectionError:
            await self.disconnect()
            raise
        _LOGGER.info("Connected to broker %s:%d", self.host, self.port)

    async def _reader_loop(
        self,
        access_token: str,
        tls_context: ssl.SSLContext,
        ready: asyncio.Future[None],
    ) -> None:
        """Own the client for the lifetime of the connection."""
        try:
            async with aiomqtt.Client(
                hostname=self.host,
                port=self.port,
                username=MQTT_USERNAME,
                password=access_token,
                keepalive=MQTT_KEEPALIVE,
                tls_context=tls_context,
            ) as client:
                self._client = client
                for topic in self._topics():
                    try:
                        await client.subscribe(topic, qos=MQTT_QOS)
                        _LOGGER.debug("Subscribed to %s", topic)
                    except aiomqtt.MqttError as err:
                        _LOGGER.warning("Subscription to %s failed: %s", topic, err)
                if not ready.done():
                    ready.set_result(None)

                async for message in client.messages:
                    self._handle_message(str(message.topic), message.payload)
        except aiomqtt.MqttError as err:
            if not ready.done():
                if (
                    isinstance(err, aiomqtt.MqttCodeError)
                    and err.rc in AUTH_REJECTED_CODES
                ):
                    error: StellantisConnectionError = StellantisAuthenticationError(
                        f"Broker rejected credentials: {err}"
                    )
                else:
                    error = StellantisConnectionError(f"Broker connection failed: {err}")
                ready.set_exception(error)
            else:
                _LOGGER.warning("Broker connection lost: %s", err)
        finally:
            self._client = None
            self._fail_pending(StellantisConnectionError("Broker connection closed"))

    def _handle_message(self, topic: str, payload: Any) -> None:
        """Route one incoming message to its waiter or the event listener."""
        try:
            if isinstance(payload, (bytes, bytearray)):
                payload = payload.decode("utf-8")
            data = json.loads(payload)
        except (UnicodeDecodeError, ValueError, TypeError) as err:
            _LOGGER.debug("Ignoring undecodable message on %s: %s", topic, err)
            return
        if not isinstance(data, dict):
            _LOGGER.debug("Ignoring non-object message on %s", topic)
            return

        if topic.startswith(MQTT_EVENT_TOPIC):
            vin = topic[len(MQTT_EVENT_TOPIC) :]
            _LOGGER.debug("Event for %s: %s", vin, data)
            if self.on_event is not None:
                try:
                    self.on_event(vin, data)
                except Exception:
                    _LOGGER.exception("Event listener failed for %s", vin)
            return

        response = CommandResponse.parse(data)
        future = self._pending.pop(response.correlation_id or "", None)
        if future is None:
            _LOGGER.debug(
                "No pending command for correlation id %s", response.correlation_id
            )
            return
        if not future.done():
            future.set_result(response)

    def _fail_pending(self, error: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)
        if pending:
            _LOGGER.debug("Rejected %d pending commands: %s", len(pending), error)

    async def send_command(self, vin: str, command: RemoteCommand) -> CommandResponse:
        """Publish a command and wait for its correlated response.

        Args:
            vin: Target vehicle
            command: Command to send

        Returns:
            The successful response

        Raises:
            StellantisConnectionError: If not connected or the publish fails
            CommandTimeoutError: If no response arrives in time
            CommandError: If the backend answers with a non-zero status
        """
        client = self._client
        if client is None or self._access_token is None:
            raise StellantisConnectionError("Not connected to broker")

        correlation_id = new_correlation_id()
        envelope = build_envelope(
            command, self._access_token, self.customer_id, vin, correlation_id
        )
        topic = f"{MQTT_REQUEST_TOPIC}{self.customer_id}{command.service}"
        future: asyncio.Future[CommandResponse] = (
            asyncio.get_running_loop().create_future()
        )
        self._pending[correlation_id] = future

        _LOGGER.debug("Sending %s to %s (%s)", command.service, vin, correlation_id)
        try:
            await client.publish(topic, json.dumps(envelope), qos=MQTT_QOS)
            async with asyncio.timeout(self.command_timeout):
                response = await future
        except TimeoutError as err:
            raise CommandTimeoutError(correlation_id, self.command_timeout) from err
        except aiomqtt.MqttError as err:
            raise StellantisConnectionError(f"Publish failed: {err}") from err
        finally:
            self._pending.pop(correlation_id, None)

        if not response.is_success:
            raise CommandError(response.return_code, response.payload)
        _LOGGER.debug("Command %s succeeded", correlation_id)
        return response

    async def disconnect(self) -> None:
        """Close the connection and reject every pending command."""
        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._reader_task
        self._reader_task = None
        self._client = None
        self._fail_pending(StellantisConnectionError("Disconnected from broker"))
        _LOGGER.debug("Disconnected from broker")
