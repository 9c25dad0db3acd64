"""Deploy, update and remove applications in a Kubernetes cluster."""
__version__ = "0.1.0"
