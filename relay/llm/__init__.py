"""
LLM Routing Layer — Multi-provider routing, fallback and caching.

Provides a single entry point for calling different LLM providers
(OpenAI, Anthropic, DeepSeek, Groq, any OpenAI-compatible endpoint)
with score-based selection, rate limiting and ordered fallback.

Modules:
- llm_config: Task types, priorities, built-in provider profiles
- registry: ProviderRegistry — reliability, latency and health state
- scoring: Provider scoring for a given request
- router: ModelRouter — selection with ordered fallback
- providers: ProviderClient — HTTP adapters per wire format
- health: HealthMonitor — periodic provider probes
- rate_limiter: RateLimiter — fixed-window per-provider limits
- request_queue: RequestQueue — bounded single-consumer queue
- cache: SemanticCache — embedding-based response reuse
- metrics: MetricsRecorder — cache and provider counters
"""
