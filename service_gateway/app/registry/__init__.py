"""
Service registry package.

- models: resource descriptors, bindings and policies (immutable)
- registry: snapshot lookup and atomic swap
- loader: YAML topology document -> validated snapshot

Import from the submodules directly; adapters depend on ``models`` and the
registry depends on adapters.
"""
