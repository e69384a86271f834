"""
Sample helpers for `combee shell --load examples/functions_to_load.py`.

The shell calls setup(context) with its namespace dict; anything added to it
is available at the prompt.
"""
import json


def print_jobs(jobs):
    for job in jobs:
        print(json.dumps(job.as_dict(), indent=2, default=str))


def setup(context):
    context["print_jobs"] = print_jobs
