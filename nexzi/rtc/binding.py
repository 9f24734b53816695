"""
Media binding: attaches negotiated streams to a display sink.

The binding reacts to :class:`~nexzi.session.LifecycleEvent` notifications and
session views.  The viewer renders the remote stream; the sharer renders its
own capture as a muted preview.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, List, Optional, Set, Tuple

from .webrtc import MediaStream, MediaTrack

if TYPE_CHECKING:  # pragma: no cover
    from ..session import LifecycleEvent, SessionManager, SessionView

LOG = logging.getLogger(__name__)


class MediaBinding:
    """
    Base class for display sinks.

    Subclasses implement :meth:`_attach_track` and usually :meth:`_detach`.
    """

    def __init__(self, manager: "SessionManager") -> None:
        self._manager = manager
        self._view_token: Optional[int] = None
        self._lifecycle_token: Optional[int] = None
        self._lock = threading.RLock()
        self._attached: Set[str] = set()
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def start(self) -> None:
        """
        Begin observing the session manager.
        """

        if self._lifecycle_token is not None:
            return
        self._lifecycle_token = self._manager.on_lifecycle(self._on_lifecycle)
        self._view_token = self._manager.subscribe(self._on_view)
        if self._manager.view.connected:
            self.sync(self._manager.view)

    def stop(self) -> None:
        """
        Stop observing the session and release the sink.
        """

        for token in (self._lifecycle_token, self._view_token):
            if token is not None:
                self._manager.unsubscribe(token)
        self._lifecycle_token = None
        self._view_token = None
        self._release()

    async def aclose(self) -> None:
        """
        Stop observing and wait until the sink has released its resources.
        """

        self.stop()
        await self._wait_released()

    def sync(self, view: "SessionView") -> None:
        """
        Attach every track of the rendered stream that is not attached yet.
        """

        stream, muted = self._select_stream(view)
        if stream is None:
            return
        pending: List[Tuple[MediaTrack, bool]] = []
        with self._lock:
            self._active = True
            for track in stream.tracks:
                key = track.id or str(id(track))
                if key in self._attached:
                    continue
                self._attached.add(key)
                pending.append((track, muted and track.kind == "audio"))
        for track, track_muted in pending:
            try:
                self._attach_track(track, muted=track_muted)
            except Exception:  # pragma: no cover - subclasses handle specifics
                LOG.exception("Media binding failed to attach %s track.", track.kind)

    # ------------------------------------------------------------------ helpers

    @staticmethod
    def _select_stream(view: "SessionView") -> Tuple[Optional[MediaStream], bool]:
        if not view.connected:
            return None, False
        if view.role == "viewer":
            return view.remote_stream, False
        return view.local_stream, True

    def _on_lifecycle(self, event: "LifecycleEvent", view: "SessionView") -> None:
        LOG.debug("Media binding received %s", event.value)
        if event.value == "connected":
            self.sync(view)
        else:
            self._release()

    def _on_view(self, view: "SessionView") -> None:
        if self._active and view.connected:
            self.sync(view)

    def _release(self) -> None:
        with self._lock:
            was_active = self._active
            self._active = False
            self._attached.clear()
        if not was_active:
            return
        try:
            self._detach()
        except Exception:  # pragma: no cover - subclasses handle specifics
            LOG.exception("Media binding failed to detach.")

    def _attach_track(self, track: MediaTrack, *, muted: bool) -> None:
        raise NotImplementedError

    def _detach(self) -> None:
        """
        Release backing resources.  Subclasses should override when required.
        """

    async def _wait_released(self) -> None:
        return None


__all__ = ["MediaBinding"]
