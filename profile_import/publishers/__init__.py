"""
Publisher integrations.

Each module in this package provides a PublisherBase subclass that stores the
output document and queues the profile import job.
"""
