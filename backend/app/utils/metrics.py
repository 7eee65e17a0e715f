# /app/utils/metrics.py

from prometheus_client import Counter, Histogram, Gauge

# This file defines all Prometheus metrics used for application monitoring.
# Centralizing them here makes them easy to find and manage.

# Simulation Metrics
simulation_operations_counter = Counter(
    'flow_simulation_operations_total', 'Simulator operations', ['operation', 'outcome']
)
simulation_runs_counter = Counter('flow_simulation_runs_total', 'Simulation runs that ended', ['status'])
active_runs_gauge = Gauge('flow_simulation_active_runs', 'Number of simulation runs held in memory')

# Analysis Metrics
flow_analysis_counter = Counter('flow_analysis_total', 'Flow analyses performed', ['result'])

# Performance Metrics
response_time_histogram = Histogram('response_time_seconds', 'Response time in seconds', ['endpoint'])
