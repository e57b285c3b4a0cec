"""
Resumable place-listing pipeline.

Stages (pipeline.stages) run one invocation at a time through
PipelineRunner; PipelineScheduler triggers them on cron schedules.
"""
