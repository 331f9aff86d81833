import inspect
import logging
import typing


logger = logging.getLogger(__name__)

CallbackType = typing.Callable[..., typing.Any]


class EventEmitter:

	"""
	A synchronous one-to-many event emitter.

	Listeners are called in registration order, on the emitting thread,
	before ``emit`` returns. When ``event_names`` is given, only those names
	may be subscribed to.
	"""

	def __init__ (self, event_names: typing.Optional[typing.Iterable[str]] = None) -> None:

		"""
		Initialize an empty listener registry.
		"""

		self._known: typing.Optional[typing.FrozenSet[str]] = frozenset(event_names) if event_names is not None else None
		self._listeners: typing.Dict[str, typing.List[CallbackType]] = {}


	def _check_name (self, event_name: str) -> None:

		if self._known is not None and event_name not in self._known:
			raise ValueError(f"Unknown event {event_name!r}")


	def on (self, event_name: str, callback: CallbackType) -> None:

		"""
		Register a callback for an event name.

		Raises ``ValueError`` for names outside the known set, or for async
		callbacks (events are delivered synchronously).
		"""

		self._check_name(event_name)

		if inspect.iscoroutinefunction(callback):
			raise ValueError(f"Async callback cannot be registered for event {event_name!r}")

		if event_name not in self._listeners:
			self._listeners[event_name] = []

		self._listeners[event_name].append(callback)


	def off (self, event_name: str, callback: CallbackType) -> None:

		"""
		Unregister a previously registered callback.

		Raises ``ValueError`` if the callback is not registered for the event.
		"""

		if event_name not in self._listeners or callback not in self._listeners[event_name]:
			raise ValueError(f"Callback not registered for event {event_name!r}")

		self._listeners[event_name].remove(callback)


	def emit (self, event_name: str, *args: typing.Any) -> None:

		"""
		Call every listener for the event immediately.

		A listener that raises is logged and skipped so the remaining
		listeners (and the caller's timing state) are unaffected.
		"""

		self._check_name(event_name)

		if event_name not in self._listeners:
			return

		for callback in list(self._listeners[event_name]):

			try:
				callback(*args)
			except Exception:
				logger.exception(f"Listener for {event_name!r} failed")
