"""Constants for the Service Manager Operator."""

# API Group
API_GROUP = "services.cloud37.dev"
API_VERSION = "v1"
API_GROUP_VERSION = f"{API_GROUP}/{API_VERSION}"

# Resource Kinds
KIND_SERVICE_INSTANCE = "ServiceInstance"
KIND_SERVICE_BINDING = "ServiceBinding"

PLURAL_SERVICE_INSTANCES = "serviceinstances"
PLURAL_SERVICE_BINDINGS = "servicebindings"

# Labels
LABEL_BINDING = f"{API_GROUP}/binding"
LABEL_STALE_BINDING_ID = f"{API_GROUP}/stale"
LABEL_STALE_ROTATION_OF = f"{API_GROUP}/rotationOf"

# Annotations
ANNOTATION_FORCE_ROTATE = f"{API_GROUP}/forceRotate"
ANNOTATION_IGNORE_NON_TRANSIENT = f"{API_GROUP}/ignoreNonTransientError"
ANNOTATION_IGNORE_NON_TRANSIENT_TIMESTAMP = f"{API_GROUP}/ignoreNonTransientErrorTimestamp"
ANNOTATION_USE_INSTANCE_METADATA_NAME = f"{API_GROUP}/useInstanceMetadataName"

# Finalizers
FINALIZER = f"{API_GROUP}/finalizer"

# Field Manager
FIELD_MANAGER = "service-manager-operator"
CONTROLLER_NAME = "service-manager-operator"

# Labels stored on remote objects
SM_LABEL_NAMESPACE = "_namespace"
SM_LABEL_K8S_NAME = "_k8sname"
SM_LABEL_CLUSTER_ID = "_clusterid"

# Condition Types
COND_SUCCEEDED = "Succeeded"
COND_FAILED = "Failed"
COND_READY = "Ready"
COND_SHARED = "Shared"
COND_CRED_ROTATION_IN_PROGRESS = "CredRotationInProgress"
COND_PENDING_TERMINATION = "PendingTermination"

# Operation types
OP_CREATE = "create"
OP_UPDATE = "update"
OP_DELETE = "delete"
OP_UNKNOWN = ""

# Remote operation states
STATE_PENDING = "pending"
STATE_IN_PROGRESS = "in progress"
STATE_SUCCEEDED = "succeeded"
STATE_FAILED = "failed"

# Condition Reasons
REASON_CREATED = "Created"
REASON_UPDATED = "Updated"
REASON_DELETED = "Deleted"
REASON_FINISHED = "Finished"
REASON_CREATE_IN_PROGRESS = "CreateInProgress"
REASON_UPDATE_IN_PROGRESS = "UpdateInProgress"
REASON_DELETE_IN_PROGRESS = "DeleteInProgress"
REASON_IN_PROGRESS = "InProgress"
REASON_CREATE_FAILED = "CreateFailed"
REASON_UPDATE_FAILED = "UpdateFailed"
REASON_DELETE_FAILED = "DeleteFailed"
REASON_OPERATION_FAILED = "Failed"
REASON_PENDING = "Pending"
REASON_BLOCKED = "Blocked"
REASON_PROVISIONED = "Provisioned"
REASON_NOT_PROVISIONED = "NotProvisioned"
REASON_SHARE_SUCCEEDED = "ShareSucceeded"
REASON_SHARE_FAILED = "ShareFailed"
REASON_SHARE_NOT_SUPPORTED = "ShareNotSupported"
REASON_UNSHARE_SUCCEEDED = "UnShareSucceeded"
REASON_UNSHARE_FAILED = "UnShareFailed"
REASON_CRED_PREPARING = "Preparing"
REASON_CRED_ROTATING = "Rotating"
REASON_PENDING_TERMINATION = "PendingTermination"

# Event Reasons
EVENT_REASON_RECONCILE_STARTED = "ReconcileStarted"
EVENT_REASON_RECONCILE_FAILED = "ReconcileFailed"
EVENT_REASON_CREATED = "Created"
EVENT_REASON_UPDATED = "Updated"
EVENT_REASON_DELETED = "Deleted"
EVENT_REASON_BLOCKED = "Blocked"
EVENT_REASON_SECRET_CREATED = "SecretCreated"
EVENT_REASON_CREDENTIALS_ROTATED = "CredentialsRotated"

# Secret layout
SECRET_METADATA_KEY = ".metadata"
SECRET_FORMAT_TEXT = "text"
SECRET_FORMAT_JSON = "json"
SECRET_TEMPLATE_MAX_BYTES = 1024 * 1024

# Secret resolver
SM_SECRET_NAME = "service-manager-operator"
