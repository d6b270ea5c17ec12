"""Sample submission client: reads commands from stdin and talks to the API via the proxy."""

import json
import sys
import urllib.request

BASE_URL = "http://127.0.0.1:5000"


def fetch(path):
    with urllib.request.urlopen(BASE_URL + path, timeout=5) as response:
        return json.loads(response.read())


print("Todo client ready", flush=True)
for line in sys.stdin:
    command = line.strip()
    if command == "list":
        for todo in fetch("/todos"):
            print(f"{todo['id']}. {todo['title']}", flush=True)
    elif command == "csv":
        print("id,title,done", flush=True)
        for todo in fetch("/todos"):
            print(f"{todo['id']},{todo['title']},{str(todo['done']).lower()}", flush=True)
    elif command == "quit":
        break
    else:
        print(f"unknown command: {command}", flush=True)
