"""
Kubernetes-backed store, built on the official ``kubernetes`` client.

Blocky objects go through CustomObjectsApi, Deployments through AppsV1Api.
``update`` replaces a Blocky's spec and metadata, ``update_status`` goes
through its status subresource. ``subscribe`` runs one watch per kind.

Error mapping:
  404                      -> None (get) / False (delete) / ConflictError (update)
  409                      -> ConflictError
  any other API error      -> TransientFetchError / TransientWriteError
  connection or timeout    -> TransientFetchError / TransientWriteError
"""

import logging
import threading
from typing import Any, Callable, List, Optional, Set, Type

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes import watch
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as ConnectionFailure

from blocky_controller.models.blocky import API_GROUP, API_VERSION, PLURAL, Blocky
from blocky_controller.models.deployment import Deployment
from blocky_controller.models.meta import ObjectKey, ResourceKind
from blocky_controller.store.base import (
    ConflictError,
    KubeObject,
    StoreError,
    TransientFetchError,
    TransientWriteError,
    WatchEvent,
    check_deadline,
)

logger = logging.getLogger(__name__)

PROPAGATION_POLICY = "Background"

# Server-side watch timeout; the stream is reopened from the last version seen
WATCH_TIMEOUT_SECONDS = 300
WATCH_RETRY_SECONDS = 1.0
WATCH_RETRY_MAX_SECONDS = 30.0
WATCH_EVENT_TYPES = (WatchEvent.ADDED, WatchEvent.MODIFIED, WatchEvent.DELETED)

Subscriber = Callable[[WatchEvent], None]


class KubernetesStore:
    """Store adapter over a live API server."""

    def __init__(self, api_client: Optional[k8s_client.ApiClient] = None):
        self._custom = k8s_client.CustomObjectsApi(api_client)
        self._apps = k8s_client.AppsV1Api(api_client)

    @classmethod
    def from_environment(cls) -> "KubernetesStore":
        """In-cluster config when running in a pod, kubeconfig otherwise."""
        try:
            k8s_config.load_incluster_config()
        except k8s_config.ConfigException:
            k8s_config.load_kube_config()
        return cls()

    # --- Reads ---

    def get(
        self, kind: ResourceKind, key: ObjectKey, timeout: Optional[float] = None
    ) -> Optional[KubeObject]:
        check_deadline(timeout, TransientFetchError, f"get {kind.value} {key}")
        try:
            if kind is ResourceKind.BLOCKY:
                raw = self._custom.get_namespaced_custom_object(
                    API_GROUP, API_VERSION, key.namespace, PLURAL, key.name,
                    _request_timeout=timeout,
                )
                return Blocky.model_validate(raw)
            raw = self._apps.read_namespaced_deployment(
                key.name, key.namespace, _request_timeout=timeout,
            )
            return self._to_deployment(raw)
        except ApiException as e:
            if e.status == 404:
                return None
            raise self._translate(e, TransientFetchError, f"get {kind.value} {key}")
        except ConnectionFailure as e:
            raise TransientFetchError(f"get {kind.value} {key}: {e}") from e

    def list(
        self, kind: ResourceKind, timeout: Optional[float] = None
    ) -> List[KubeObject]:
        check_deadline(timeout, TransientFetchError, f"list {kind.value}")
        try:
            if kind is ResourceKind.BLOCKY:
                raw = self._custom.list_cluster_custom_object(
                    API_GROUP, API_VERSION, PLURAL, _request_timeout=timeout,
                )
                return [Blocky.model_validate(item) for item in raw.get("items", [])]
            raw = self._apps.list_deployment_for_all_namespaces(
                _request_timeout=timeout,
            )
            return [self._to_deployment(item) for item in raw.items]
        except ApiException as e:
            raise self._translate(e, TransientFetchError, f"list {kind.value}")
        except ConnectionFailure as e:
            raise TransientFetchError(f"list {kind.value}: {e}") from e

    # --- Writes ---

    def create(self, obj: KubeObject, timeout: Optional[float] = None) -> KubeObject:
        operation = f"create {obj.kind} {obj.key}"
        check_deadline(timeout, TransientWriteError, operation)
        body = obj.to_wire()
        if isinstance(obj, Blocky):
            return self._write(
                operation,
                Blocky.model_validate,
                self._custom.create_namespaced_custom_object,
                API_GROUP, API_VERSION, obj.metadata.namespace, PLURAL, body,
                _request_timeout=timeout,
            )
        return self._write(
            operation,
            self._to_deployment,
            self._apps.create_namespaced_deployment,
            obj.metadata.namespace, body,
            _request_timeout=timeout,
        )

    def update(
        self,
        obj: KubeObject,
        expected_version: Optional[str],
        timeout: Optional[float] = None,
    ) -> KubeObject:
        """Replace metadata and spec. The server ignores a Blocky's status here."""
        operation = f"update {obj.kind} {obj.key}"
        check_deadline(timeout, TransientWriteError, operation)
        body = self._versioned_body(obj, expected_version)
        if isinstance(obj, Blocky):
            return self._write(
                operation,
                Blocky.model_validate,
                self._custom.replace_namespaced_custom_object,
                API_GROUP, API_VERSION, obj.metadata.namespace, PLURAL,
                obj.metadata.name, body,
                _request_timeout=timeout,
            )
        return self._write(
            operation,
            self._to_deployment,
            self._apps.replace_namespaced_deployment,
            obj.metadata.name, obj.metadata.namespace, body,
            _request_timeout=timeout,
        )

    def update_status(
        self,
        obj: Blocky,
        expected_version: Optional[str],
        timeout: Optional[float] = None,
    ) -> Blocky:
        """Replace a Blocky's status through the status subresource."""
        operation = f"update status {obj.kind} {obj.key}"
        check_deadline(timeout, TransientWriteError, operation)
        return self._write(
            operation,
            Blocky.model_validate,
            self._custom.replace_namespaced_custom_object_status,
            API_GROUP, API_VERSION, obj.metadata.namespace, PLURAL,
            obj.metadata.name, self._versioned_body(obj, expected_version),
            _request_timeout=timeout,
        )

    def delete(
        self, kind: ResourceKind, key: ObjectKey, timeout: Optional[float] = None
    ) -> bool:
        """Delete with background propagation; the garbage collector cascades."""
        operation = f"delete {kind.value} {key}"
        check_deadline(timeout, TransientWriteError, operation)
        try:
            if kind is ResourceKind.BLOCKY:
                self._custom.delete_namespaced_custom_object(
                    API_GROUP, API_VERSION, key.namespace, PLURAL, key.name,
                    body=k8s_client.V1DeleteOptions(
                        propagation_policy=PROPAGATION_POLICY
                    ),
                    _request_timeout=timeout,
                )
            else:
                self._apps.delete_namespaced_deployment(
                    key.name, key.namespace,
                    propagation_policy=PROPAGATION_POLICY,
                    _request_timeout=timeout,
                )
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise self._translate(e, TransientWriteError, operation)
        except ConnectionFailure as e:
            raise TransientWriteError(f"{operation}: {e}") from e

    # --- Change notifications ---

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Watch Blocky and Deployment objects, one thread per kind, and hand
        every change to ``callback``. Returns a function that stops both.
        """
        stop = threading.Event()
        active: Set[watch.Watch] = set()
        lock = threading.Lock()
        threads = [
            threading.Thread(
                target=self._watch,
                args=(kind, callback, stop, active, lock),
                name=f"watch-{kind.value.lower()}",
                daemon=True,
            )
            for kind in ResourceKind
        ]
        for thread in threads:
            thread.start()

        def unsubscribe() -> None:
            stop.set()
            with lock:
                watchers = list(active)
            for watcher in watchers:
                watcher.stop()

        return unsubscribe

    def _watch(
        self,
        kind: ResourceKind,
        callback: Subscriber,
        stop: threading.Event,
        active: Set[watch.Watch],
        lock: threading.Lock,
    ) -> None:
        """Stream changes of ``kind`` until ``stop`` is set, resuming after errors."""
        resource_version: Optional[str] = None
        retry_seconds = WATCH_RETRY_SECONDS
        while not stop.is_set():
            watcher = watch.Watch()
            with lock:
                if stop.is_set():
                    return
                active.add(watcher)
            try:
                if kind is ResourceKind.BLOCKY:
                    stream = watcher.stream(
                        self._custom.list_cluster_custom_object,
                        API_GROUP, API_VERSION, PLURAL,
                        resource_version=resource_version,
                        timeout_seconds=WATCH_TIMEOUT_SECONDS,
                    )
                else:
                    stream = watcher.stream(
                        self._apps.list_deployment_for_all_namespaces,
                        resource_version=resource_version,
                        timeout_seconds=WATCH_TIMEOUT_SECONDS,
                    )
                for event in stream:
                    if stop.is_set():
                        break
                    if event.get("type") not in WATCH_EVENT_TYPES:
                        continue
                    if kind is ResourceKind.BLOCKY:
                        obj: KubeObject = Blocky.model_validate(event["object"])
                    else:
                        obj = self._to_deployment(event["object"])
                    resource_version = obj.metadata.resource_version or resource_version
                    self._deliver(callback, WatchEvent(event["type"], obj))
                retry_seconds = WATCH_RETRY_SECONDS
            except ApiException as e:
                if e.status == 410:
                    logger.info("Watch of %s expired, restarting from now", kind.value)
                    resource_version = None
                    continue
                logger.warning("Watch of %s failed: HTTP %s %s", kind.value, e.status, e.reason)
                stop.wait(retry_seconds)
                retry_seconds = min(retry_seconds * 2, WATCH_RETRY_MAX_SECONDS)
            except ConnectionFailure as e:
                logger.warning("Watch of %s lost its connection: %s", kind.value, e)
                stop.wait(retry_seconds)
                retry_seconds = min(retry_seconds * 2, WATCH_RETRY_MAX_SECONDS)
            except Exception:
                logger.exception("Unexpected error watching %s", kind.value)
                stop.wait(retry_seconds)
                retry_seconds = min(retry_seconds * 2, WATCH_RETRY_MAX_SECONDS)
            finally:
                watcher.stop()
                with lock:
                    active.discard(watcher)

    @staticmethod
    def _deliver(callback: Subscriber, event: WatchEvent) -> None:
        try:
            callback(event)
        except Exception:
            logger.exception("Watch subscriber failed on %r", event)

    # --- Helpers ---

    @staticmethod
    def _versioned_body(obj: KubeObject, expected_version: Optional[str]) -> dict:
        body = obj.to_wire()
        # The server rejects the write with 409 unless this still matches
        body["metadata"]["resourceVersion"] = expected_version
        return body

    def _write(
        self,
        operation: str,
        parse: Callable[[Any], KubeObject],
        call: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> KubeObject:
        try:
            return parse(call(*args, **kwargs))
        except ApiException as e:
            if e.status == 404:
                raise ConflictError(f"{operation}: object no longer exists") from e
            raise self._translate(e, TransientWriteError, operation)
        except ConnectionFailure as e:
            raise TransientWriteError(f"{operation}: {e}") from e

    def _to_deployment(self, raw: Any) -> Deployment:
        """Typed client objects are snake_case; normalize to the wire form first."""
        if not isinstance(raw, dict):
            raw = self._apps.api_client.sanitize_for_serialization(raw)
        return Deployment.model_validate(raw)

    @staticmethod
    def _translate(
        error: ApiException, transient_cls: Type[StoreError], operation: str
    ) -> StoreError:
        if error.status == 409:
            translated: StoreError = ConflictError(f"{operation}: {error.reason}")
        else:
            logger.warning(
                "API server returned %s for %s: %s", error.status, operation, error.reason
            )
            translated = transient_cls(f"{operation}: HTTP {error.status} {error.reason}")
        translated.__cause__ = error
        return translated
