"""Staged upload pipeline.

An accepted upload goes through validate → stage → transfer → cleanup:

- validator: checks declared extension, MIME type and size against a policy
- stager: writes the bytes to a uniquely named local file
- transfer: pushes the staged file to the remote store
- cleanup: deletes the staged file exactly once, success or failure
- orchestrator: runs the pipeline for single, array and multi-field requests

The local staging area is scratch space, never storage.
"""
