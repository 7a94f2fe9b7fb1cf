"""Worker threads and Google API clients.

Network calls block, so they never run on the main thread. Two helpers move
them to an :class:`AsyncWorker`:

- :func:`start_asynchronous` waits for the result in a local event loop and
  returns it (or raises), bounded by a total timeout.
- :func:`dispatch` returns immediately and delivers the result or error to
  callbacks on the main thread.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Set, Tuple

from PySide6 import QtCore
from googleapiclient.discovery import build

from .auth import AuthExpiredError
from ..status import status

# Cached API clients to avoid repeated discovery/auth costs
_cached_services: Dict[Tuple[str, str], Any] = {}

TOTAL_TIMEOUT: int = 60
MAX_RETRIES: int = 1

# Errors that retrying within the same call cannot fix
NON_RETRYABLE = (
    AuthExpiredError,
    status.AuthenticationException,
    status.CredsInvalidException,
    status.RemoteNotConfiguredException,
    status.ValidationException,
)


class AsyncWorker(QtCore.QThread):
    """
    Generic worker thread with retry logic for blocking functions.

    Signals:
        resultReady (object): Emitted with the function's result on success.
        errorOccurred (object): Emitted with the exception on failure.
    """
    resultReady = QtCore.Signal(object)
    errorOccurred = QtCore.Signal(object)

    def __init__(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        super().__init__()
        self.func = func
        self.args = args

        self.max_attempts = kwargs.pop('max_attempts', MAX_RETRIES)
        self.wait_seconds = kwargs.pop('wait_seconds', 2.0)
        self.kwargs = kwargs

    def run(self) -> None:
        attempts = 0
        last_exception = None
        while attempts < self.max_attempts:
            attempts += 1
            try:
                result = self.func(*self.args, **self.kwargs)
                self.resultReady.emit(result)
                return
            except NON_RETRYABLE as ex:
                self.errorOccurred.emit(ex)
                return
            except Exception as ex:
                last_exception = ex
                logging.debug(f'Attempt {attempts}/{self.max_attempts} of {self.func} failed: {ex}')
                if attempts < self.max_attempts:
                    time.sleep(self.wait_seconds)
        # All retries exhausted
        self.errorOccurred.emit(last_exception)


def _raise_for(err: BaseException) -> None:
    """Re-raise a worker error as a status exception."""
    if isinstance(err, status.BaseStatusException):
        raise err
    if isinstance(err, AuthExpiredError):
        raise status.AuthenticationException(str(err)) from err
    raise status.UnknownException(str(err)) from err


def start_asynchronous(func: Callable[..., Any], *args: Any, total_timeout: int = TOTAL_TIMEOUT,
                       **kwargs: Any) -> Any:
    """
    Run a blocking function in an AsyncWorker and wait for it in a local event loop.

    The calling thread keeps processing events while it waits.

    Args:
        func: The blocking function to run.
        *args, **kwargs: Arguments passed to func (``max_attempts`` and
            ``wait_seconds`` configure the worker).
        total_timeout (int): Total operation timeout in seconds.

    Returns:
        The result of the function on success.

    Raises:
        status.TimeoutException: If the operation does not finish in time.
        status.BaseStatusException: If the function raised one.
        status.UnknownException: For any other error.
    """
    worker: AsyncWorker = AsyncWorker(func, *args, **kwargs)

    result: Dict[str, Any] = {'data': None, 'error': None, 'done': False}
    loop: QtCore.QEventLoop = QtCore.QEventLoop()

    worker.resultReady.connect(lambda d: result.update({'data': d, 'done': True}))
    worker.errorOccurred.connect(lambda err: result.update({'error': err, 'done': True}))
    # Queued to this thread, so a worker that finishes before exec() still ends the loop
    worker.finished.connect(loop.quit)

    timer: QtCore.QTimer = QtCore.QTimer()
    timer.setSingleShot(True)
    timer.setInterval(total_timeout * 1000)
    timer.timeout.connect(loop.quit)

    worker.start()
    timer.start()
    loop.exec()
    timer.stop()

    if not result['done']:
        worker.terminate()
        worker.wait()
        raise status.TimeoutException(f'{getattr(func, "__name__", func)} did not finish in {total_timeout}s.')
    worker.wait()

    if result['error'] is not None:
        _raise_for(result['error'])
    return result['data']


class _Callbacks(QtCore.QObject):
    """Receives worker signals on the thread that created it."""

    def __init__(self, worker: AsyncWorker, on_result: Optional[Callable[[Any], None]],
                 on_error: Optional[Callable[[BaseException], None]]) -> None:
        super().__init__()
        self.worker = worker
        self.on_result = on_result
        self.on_error = on_error
        worker.resultReady.connect(self.result_ready)
        worker.errorOccurred.connect(self.error_occurred)
        worker.finished.connect(self.release)

    @QtCore.Slot(object)
    def result_ready(self, data: Any) -> None:
        if self.on_result:
            self.on_result(data)

    @QtCore.Slot(object)
    def error_occurred(self, err: BaseException) -> None:
        if self.on_error:
            self.on_error(err)
        else:
            logging.error(f'Background call failed: {err}')

    @QtCore.Slot()
    def release(self) -> None:
        _active.discard(self)


# Keeps dispatched workers alive until they finish
_active: Set[_Callbacks] = set()


def dispatch(func: Callable[..., Any], on_result: Optional[Callable[[Any], None]] = None,
             on_error: Optional[Callable[[BaseException], None]] = None, **kwargs: Any) -> AsyncWorker:
    """Run func in an AsyncWorker without waiting.

    The callbacks are invoked on the calling thread's event loop.

    Returns:
        The started worker.
    """
    worker = AsyncWorker(func, **kwargs)
    _active.add(_Callbacks(worker, on_result, on_error))
    worker.start()
    return worker


def clear_service() -> None:
    """
    Clears the cached API clients.
    """
    for key, client in list(_cached_services.items()):
        try:
            client.close()
        except AttributeError as ex:
            logging.debug(f'Failed closing cached {key} client: {ex}')
    _cached_services.clear()


def get_service(auth_manager, api: str = 'sheets', version: str = 'v4') -> Any:
    """
    Builds (or returns cached) Google API service client.

    Args:
        auth_manager: Supplies valid credentials.
        api: API name, e.g. 'sheets' or 'oauth2'.
        version: API version.

    Returns:
        The API Resource, reusing a single client per api and version.

    Raises:
        AuthExpiredError: If interactive sign-in is required.
        status.NetworkException: If the client cannot be built.
    """
    logging.debug(f'[Thread-{threading.get_ident()}] get_service: requesting credentials for {api} {version}')
    creds: Any = auth_manager.get_valid_credentials()

    key = (api, version)
    if key in _cached_services:
        return _cached_services[key]
    try:
        service: Any = build(api, version, credentials=creds, cache_discovery=False)
    except Exception as ex:
        raise status.NetworkException(f'Could not build the {api} {version} client: {ex}') from ex

    logging.debug(f'Google {api} {version} client created successfully.')
    _cached_services[key] = service
    return service


@QtCore.Slot(str)
def _reset_cached_service(section: str) -> None:
    """Clear the cached clients when client_secret changes."""
    if section == 'client_secret':
        logging.debug('Clearing cached service clients due to client_secret change')
        clear_service()


def _connect_signals() -> None:
    from .signals import signals
    signals.configSectionChanged.connect(_reset_cached_service)


_connect_signals()
