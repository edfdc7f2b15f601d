#!/usr/bin/env python3
"""tm-controller - Traffic Manager Backend Controller

Keeps TrafficManagerBackend resources in sync with Azure Traffic Manager
endpoints. Each Backend references a TrafficManagerProfile and a
multi-cluster service; one external endpoint is registered per healthy
member of the service while the Backend is accepted, and every endpoint is
removed before the Backend is allowed to go away.

See tm_controller.config for the environment variables and YAML layout.
"""

from __future__ import annotations

import logging
import sys

import kopf
import kubernetes

from tm_controller.config import load_config, validate_config
from tm_controller.controller import Controller, register_handlers
from tm_controller.provider import AzureTrafficManagerProvider, file_token_provider
from tm_controller.reconciler import BackendReconciler
from tm_controller.resolver import DependencyResolver
from tm_controller.store import KubernetesObjectStore
from tm_controller.synchronizer import EndpointSynchronizer

logger = logging.getLogger(__name__)


def load_kubernetes_config() -> None:
    try:
        kubernetes.config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except kubernetes.config.ConfigException:
        kubernetes.config.load_kube_config()
        logger.info("Loaded kubeconfig")


def run_operator(controller: Controller, namespace: str, workers: int) -> None:
    """Run the kopf operator until it is stopped by a signal."""
    registry = kopf.OperatorRegistry()
    register_handlers(controller, registry, workers=workers)
    kopf.run(
        registry=registry,
        standalone=True,
        clusterwide=not namespace,
        namespaces=[namespace] if namespace else [],
    )


def main():
    """Main entry point."""
    config = load_config()

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    errors = validate_config(config)
    if errors:
        for error in errors:
            logger.error(error)
        logger.error("Configuration validation failed")
        sys.exit(1)

    token_provider = None
    if config.azure_access_token_file:
        token_provider = file_token_provider(config.azure_access_token_file)

    provider = AzureTrafficManagerProvider(
        subscription_id=config.azure_subscription_id,
        resource_group=config.azure_resource_group,
        access_token=config.azure_access_token,
        arm_endpoint=config.arm_endpoint,
        api_version=config.api_version,
        timeout_seconds=config.request_timeout_seconds,
        verify_tls=config.verify_tls,
        token_provider=token_provider,
    )
    if not provider.test_connection():
        logger.error(f"Cannot connect to {provider.name}. Exiting.")
        sys.exit(1)

    load_kubernetes_config()
    store = KubernetesObjectStore(namespace=config.namespace)
    reconciler = BackendReconciler(
        store=store,
        resolver=DependencyResolver(store),
        synchronizer=EndpointSynchronizer(provider, call_timeout_seconds=config.request_timeout_seconds),
        conflict_retries=config.conflict_retries,
    )
    controller = Controller(
        store=store,
        reconciler=reconciler,
        reconcile_timeout_seconds=config.reconcile_timeout_seconds,
        backoff_base_seconds=config.backoff_base_seconds,
        backoff_max_seconds=config.backoff_max_seconds,
    )

    logger.info(f"Provider: {provider.name} (resource group {config.azure_resource_group})")
    logger.info(f"Namespace: {config.namespace or 'all'}")
    logger.info(f"Sync mode: {config.sync_mode}")

    try:
        if config.sync_mode == "once":
            processed = controller.run_once()
            logger.info(f"Processed {processed} reconcile(s)")
            return

        run_operator(controller, config.namespace, config.workers)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
