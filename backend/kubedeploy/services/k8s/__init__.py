"""
Application reconciliation against a Kubernetes cluster.

- naming: Kubernetes-safe resource names
- templates: namespace/service/deployment/ingress manifests and overlay merge
- ingress_rules: insert/remove algebra over the shared ingress rules
- retry: bounded exponential back-off around cluster mutations
- resource_api: get/create/patch/delete over the Kubernetes API
- reconcile: upsert and delete of a whole application
"""
