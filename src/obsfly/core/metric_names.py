"""Well-known metric names, label keys and attributes read by the rollups."""

# Request metrics
HTTP_REQUESTS_TOTAL = "container_http_requests_total"
HTTP_REQUEST_DURATION = "container_http_requests_duration_seconds_total"
LOG_MESSAGES_TOTAL = "container_log_messages_total"

# Runtime gauges
JVM_HEAP_USED = "container_jvm_heap_used_bytes"
JVM_HEAP_SIZE = "container_jvm_heap_size_bytes"
JVM_GC_TIME = "container_jvm_gc_time_seconds"
NODEJS_EVENT_LOOP_BLOCKED = "container_nodejs_event_loop_blocked_time_seconds_total"
PYTHON_THREAD_LOCK_WAIT = "container_python_thread_lock_wait_time_seconds"
DOTNET_EXCEPTIONS_TOTAL = "container_dotnet_exceptions_total"
DOTNET_HEAP_FRAGMENTATION = "container_dotnet_heap_fragmentation_percent"

# Node metrics
NODE_CPU_USAGE = "node_cpu_usage_percent"
NODE_MEMORY_USAGE = "node_memory_usage_percent"
NODE_DISK_USAGE = "node_disk_usage_percent"
NODE_NET_RECEIVED = "node_net_received_bytes_total"
NODE_NET_TRANSMITTED = "node_net_transmitted_bytes_total"
NODE_GPU_UTILIZATION = "node_resources_gpu_utilization_percent_avg"
NODE_GPU_MEMORY_UTILIZATION = "node_resources_gpu_memory_utilization_percent_avg"
NODE_GPU_TEMPERATURE = "node_resources_gpu_temperature_celsius"
NODE_MEMORY_TOTAL = "node_resources_memory_total_bytes"
NODE_MEMORY_FREE = "node_resources_memory_free_bytes"
NODE_UPTIME = "node_uptime_seconds"

# Container gauges
CONTAINER_INFO = "container_info"
CONTAINER_UPTIME = "container_uptime_seconds"
CONTAINER_MEMORY_RSS = "container_resources_memory_rss_bytes"

# Labels and resource attributes
STATUS_LABEL = "status"
LANGUAGE_LABEL = "language"
VERSION_LABEL = "version"
POD_ATTRIBUTE = "k8s.pod.name"

# OTel span status
SPAN_STATUS_OK = 1

# Rollup constants
ERROR_STATUS_THRESHOLD = 400
LATENCY_QUANTILE = 0.95
