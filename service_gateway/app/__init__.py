"""
API Gateway service package.

The gateway fronts client requests for resources backed by heterogeneous
data sources:
- Versioning: one deployment-wide strategy (none, uri, query, header)
- Registry: resource descriptors and service bindings, swapped atomically
- Aggregation: single, fan-out-merge, fan-out-first-success
- Reliability: timeouts, bounded retries and per-adapter circuit breakers

Structure:
- app.main: FastAPI app, admin routes and the resource catch-all.
- app.adapters: backend adapters (http, postgres, filesystem, static).
- app.registry: models, snapshot registry and YAML loader.
- app.versioning: version resolver.
- app.reliability: timeout/retry/breaker decorator around adapter calls.
- app.aggregation: aggregation engine.
- app.routing: request context, response envelope and router.
- app.auth: authorization gate.
"""
