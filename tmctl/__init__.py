"""tmctl - deploy Knative and Tekton resources from the command line."""

__version__ = "0.1.0"
