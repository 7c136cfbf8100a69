"""Kubernetes-facing resources: Images, ImageImports and the backend registry."""
