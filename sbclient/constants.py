"""
Service Bus Client Constants

Centralized constants for error messages, Atom/XML namespaces, wire keys and defaults.

Author: sbclient contributors
Date: 2026-10-17
"""

# Error message templates
ERROR_LINK_SEVERED = (
    "Failed to {verb} the message as the AMQP link with which the message "
    "was received is no longer alive."
)
ERROR_SESSION_LOCK_RENEWAL = (
    "Invalid operation on the message, message lock doesn't exist when dealing with sessions"
)
ERROR_MESSAGE_ALREADY_SETTLED = "Message '{message_id}' has already been settled"
ERROR_INVALID_CONTINUATION_TOKEN = "Invalid continuationToken {token} provided"
ERROR_NEXT_LINK_SKIP = "Unable to parse the '$skip' from the next-link in the response"
ERROR_LIST_NOT_ARRAY = (
    "Error occurred while parsing the response body - cannot form a list of "
    "{kind} entities using the response from the service."
)

# Wire keys
API_VERSION_QUERY_KEY = "api-version"
CURRENT_API_VERSION = "2017-04"
XML_METADATA_MARKER = "$"
SKIP_QUERY_KEY = XML_METADATA_MARKER + "skip"
TOP_QUERY_KEY = XML_METADATA_MARKER + "top"

# Entity paths
QUEUES_PATH = "$Resources/Queues"
TOPICS_PATH = "$Resources/Topics"
SUBSCRIPTIONS_SEGMENT = "Subscriptions"
RULES_SEGMENT = "Rules"
DEAD_LETTER_QUEUE_SUFFIX = "$DeadLetterQueue"

# XML constants
XML_DECLARATION = '<?xml version="1.0" encoding="utf-8"?>'
ATOM_NAMESPACE = "http://www.w3.org/2005/Atom"
SERVICEBUS_NAMESPACE = "http://schemas.microsoft.com/netservices/2010/10/servicebus/connect"
XSI_NAMESPACE = "http://www.w3.org/2001/XMLSchema-instance"
XML_MEDIA_TYPE = "application/xml"
XML_MEDIA_TYPE_ATOM = "application/atom+xml"

# Timeout defaults (seconds)
DEFAULT_REQUEST_TIMEOUT = 30
DEFAULT_LOCK_DURATION = 60
DEFAULT_MESSAGE_TTL = 1209600  # 14 days

# Paging
DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 1000

# Limits
DEFAULT_MAX_DELIVERY_COUNT = 10
