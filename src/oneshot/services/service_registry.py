#!/usr/bin/env python3

"""
Service Registry - composition root
Builds every service once, in dependency order, and hands out controllers
"""

import os
from threading import Lock
from typing import Any, Dict, Optional

import structlog

from ..exceptions import LLMProviderError, NotConfiguredError
from .context_optimizer import ContextOptimizer
from .context_resolver import ClipboardReader, ContextResolver
from .export_service import SessionExporter
from .llm_providers.provider_factory import LLMProviderFactory
from .metrics_service import MetricsAggregator
from .models.llm_models import LLMConfiguration, LLMParameters
from .models.metrics_models import DiagnosticEvent, DiagnosticEventType
from .provider_registry import ProviderRegistry
from .session_service import SQLiteSessionStore
from .settings_service import SettingsService, get_data_directory

log = structlog.get_logger(__name__)


class ServiceRegistry:
    """
    Explicit construction of the service graph.

    There is no global instance: the application creates one registry,
    calls ``initialize`` and passes the services (or controllers built by
    ``create_chat_controller``) to whoever needs them.
    """

    def __init__(self, data_dir: Optional[str] = None,
                 clipboard: Optional[ClipboardReader] = None,
                 provider_factory: Optional[LLMProviderFactory] = None):
        """
        Args:
            data_dir: Directory for settings.db and sessions.db
                (defaults to $ONESHOT_HOME or ~/.oneshot)
            clipboard: Clipboard boundary for @clipboard references
            provider_factory: Factory used to build adapters from provider rows
        """
        self.data_dir = data_dir or get_data_directory()
        self._clipboard = clipboard
        self._provider_factory = provider_factory or LLMProviderFactory()
        self._services: Dict[str, Any] = {}
        self._lock = Lock()
        self._initialized = False

    def initialize(self):
        """Initialize all services with proper dependency resolution"""
        with self._lock:
            if self._initialized:
                return

            try:
                # 1. Settings (no dependencies)
                settings = SettingsService(os.path.join(self.data_dir, 'settings.db'))
                self._services['settings'] = settings

                # 2. Metrics
                metrics = MetricsAggregator(
                    max_request_history=int(settings.get_setting('max_request_history', 1000)),
                    max_error_history=int(settings.get_setting('max_error_history', 500)),
                )
                self._services['metrics'] = metrics

                # 3. Context
                self._services['resolver'] = ContextResolver(clipboard=self._clipboard)
                self._services['optimizer'] = ContextOptimizer(settings.load_optimizer_config())

                # 4. Providers (depend on settings and metrics)
                registry = ProviderRegistry(metrics)
                self._services['providers'] = registry
                self._load_providers(settings, registry, metrics)

                # 5. Sessions
                exporter = SessionExporter()
                self._services['exporter'] = exporter
                self._services['sessions'] = SQLiteSessionStore(
                    os.path.join(self.data_dir, 'sessions.db'), exporter, metrics)

                self._initialized = True

            except Exception as e:
                # Clean up on failure
                self._services.clear()
                log.error("services.initialization_failed", error=str(e))
                raise RuntimeError(f"Failed to initialize services: {e}") from e

        metrics.record_event(DiagnosticEvent(DiagnosticEventType.APP_LAUNCHED))
        log.info("services.initialized", data_dir=self.data_dir,
                 providers=len(registry.providers))

    def _load_providers(self, settings: SettingsService, registry: ProviderRegistry,
                        metrics: MetricsAggregator):
        chat_timeout = settings.get_setting('chat_timeout')
        request_timeout = settings.get_setting('request_timeout')
        active = settings.get_active_llm_provider()

        for row in settings.get_llm_providers():
            config = dict(row)
            config['chat_timeout'] = config.get('chat_timeout') or chat_timeout
            config['request_timeout'] = config.get('request_timeout') or request_timeout
            try:
                registry.add_provider(self._provider_factory.create_provider(config, metrics))
            except LLMProviderError as e:
                log.warning("services.provider_skipped", provider_id=row.get('id'), error=str(e))

        if active is not None and registry.get_provider(active['id']) is not None:
            registry.set_current_provider(active['id'])

    def get_service(self, service_name: str) -> Optional[Any]:
        if not self._initialized:
            self.initialize()
        return self._services.get(service_name)

    def _require(self, service_name: str):
        service = self.get_service(service_name)
        if service is None:
            raise RuntimeError(f"{service_name} service not initialized")
        return service

    @property
    def settings(self) -> SettingsService:
        return self._require('settings')

    @property
    def metrics(self) -> MetricsAggregator:
        return self._require('metrics')

    @property
    def resolver(self) -> ContextResolver:
        return self._require('resolver')

    @property
    def optimizer(self) -> ContextOptimizer:
        return self._require('optimizer')

    @property
    def providers(self) -> ProviderRegistry:
        return self._require('providers')

    @property
    def sessions(self) -> SQLiteSessionStore:
        return self._require('sessions')

    @property
    def exporter(self) -> SessionExporter:
        return self._require('exporter')

    async def authenticate_providers(self) -> Dict[str, bool]:
        """Authenticate every configured provider with its stored key"""
        results = {}
        for provider in self.providers.providers:
            try:
                await provider.authenticate({'api_key': provider.api_key})
                results[provider.id] = True
            except LLMProviderError as e:
                log.warning("services.authentication_failed", provider_id=provider.id,
                            error_type=type(e).__name__, error=str(e))
                results[provider.id] = False
        return results

    def default_configuration(self, model_id: Optional[str] = None) -> LLMConfiguration:
        """
        Configuration for the current provider built from settings.

        Args:
            model_id: Model to use; defaults to the provider row's default model,
                then to the provider's first supported model

        Raises:
            NotConfiguredError: No provider, or no usable model
        """
        provider = self.providers.current_provider
        if provider is None:
            raise NotConfiguredError("No LLM provider configured")

        model_id = model_id or provider.config.get('default_model')
        model = provider.get_model(model_id) if model_id else None
        if model is None:
            models = provider.supported_models
            if not models:
                raise NotConfiguredError(f"Provider {provider.id} offers no models")
            model = models[0]

        settings = self.settings
        return LLMConfiguration(
            model=model,
            parameters=LLMParameters(temperature=float(settings.get_setting('default_temperature', 0.7))),
            system_prompt=settings.get_system_prompt() or None,
            context_optimization=settings.get_optimization_strategy(),
        )

    def create_chat_controller(self, configuration: Optional[LLMConfiguration] = None,
                               on_snapshot=None):
        # Imported here: controllers depend on this package
        from ..controllers.chat_controller import ChatController

        return ChatController(
            registry=self.providers,
            resolver=self.resolver,
            optimizer=self.optimizer,
            session_store=self.sessions,
            configuration=configuration or self.default_configuration(),
            metrics=self.metrics,
            on_snapshot=on_snapshot,
        )

    def shutdown(self):
        """Record termination and drop every service"""
        with self._lock:
            if not self._initialized:
                return
            metrics = self._services.get('metrics')
            if metrics is not None:
                try:
                    metrics.record_event(DiagnosticEvent(DiagnosticEventType.APP_TERMINATED))
                except Exception as e:
                    log.warning("services.shutdown_event_failed", error=str(e))
            self._services.clear()
            self._initialized = False
        log.info("services.shutdown")

    def is_initialized(self) -> bool:
        return self._initialized

    def get_service_status(self) -> Dict[str, bool]:
        return {
            name: service is not None
            for name, service in self._services.items()
        }
