"""
Console Test Harness for FlowStateMachine

Simple console loop to drive process_turn() without the Flask layer.

Usage:
    python main.py [catalog_path] [--persist]

--persist stores data under outputs/intakeflow instead of in memory.
"""

import logging
import os
import sys

from intakeflow.core.catalog import load_catalog
from intakeflow.core.flow_state_machine import FlowStateMachine
from intakeflow.persistence import (
    InMemoryFieldStore,
    InMemoryHistory,
    InMemoryPointerStore,
    JsonFileFieldStore,
    JsonFilePointerStore,
    JsonLinesHistory,
)
from intakeflow.results import TurnKind
from intakeflow.utils.answer_preprocessor import ContinueIntentPreprocessor

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

CONSOLE_USER = "console"


def print_separator(char="=", length=60):
    """Print a separator line"""
    print(char * length)


def print_debug_info(turn_result):
    """Print debug information from TurnResult"""
    print("\n" + "-" * 60)
    print("DEBUG INFO:")
    print("-" * 60)

    print(f"Transitions: {[t.value for t in turn_result.transitions]}")
    if turn_result.stale_pointer_recovered:
        print("Stale pointer recovered (answer discarded)")

    debug = turn_result.debug
    if 'applied' in debug:
        print(f"Applied: {debug['applied']}")
    if debug.get('derived_updates'):
        print(f"Derived updates: {debug['derived_updates']}")
    if 'pending_attachments' in debug:
        print(f"Pending attachments: {debug['pending_attachments']}")
    if 'table_rows' in debug:
        print(f"Table rows in draft: {debug['table_rows']}")

    if turn_result.error is not None:
        print(f"Re-prompt reason: {turn_result.error}")

    print("-" * 60)


def build_flow(catalog_path, persist):
    catalog = load_catalog(catalog_path)
    if persist:
        data_dir = os.environ.get("INTAKEFLOW_DATA_DIR", "outputs/intakeflow")
        stores = (JsonFileFieldStore(data_dir), JsonFilePointerStore(data_dir), JsonLinesHistory(data_dir))
    else:
        stores = (InMemoryFieldStore(), InMemoryPointerStore(), InMemoryHistory())
    field_store, pointer_store, history = stores
    return FlowStateMachine(
        catalog=catalog,
        field_store=field_store,
        pointer_store=pointer_store,
        history=history,
        preprocessor=ContinueIntentPreprocessor(),
    )


def main():
    """Run console test"""
    args = [a for a in sys.argv[1:] if not a.startswith("--")]
    persist = "--persist" in sys.argv[1:]
    catalog_path = args[0] if args else os.environ.get("INTAKEFLOW_CATALOG", "data/sample_catalog.json")

    print_separator()
    print("INTAKE FLOW - CONSOLE TEST")
    print_separator()

    try:
        flow = build_flow(catalog_path, persist)
        print(f"\nCatalog loaded: {flow.catalog.name} v{flow.catalog.version}")
    except Exception as e:
        print(f"\nFailed to initialize: {e}")
        return 1

    print("Type 'quit', 'exit', or 'stop' to end early\n")

    user_input = ""
    turn_count = 0

    while True:
        try:
            turn_result = flow.process_turn(CONSOLE_USER, user_input)
            turn_count += 1

            print(f"\nSystem: {turn_result.system_output}\n")
            print_debug_info(turn_result)

            if turn_result.kind == TurnKind.HANDOFF:
                print_separator()
                print("HANDOFF")
                print_separator()
                for reason in turn_result.handoff_reasons:
                    print(f"  - {reason}")
                # The next turn routes to whatever section follows
                user_input = ""
                continue

            if turn_result.kind == TurnKind.TERMINAL:
                print_separator()
                print("FLOW COMPLETE")
                print_separator()
                print(f"Turns: {turn_count}")
                break

            user_input = input("> ").strip()
            if user_input.lower() in ['quit', 'exit', 'stop']:
                print("\nEnded early by user")
                break

        except KeyboardInterrupt:
            print("\n\nInterrupted by user (Ctrl+C)")
            break

        except Exception as e:
            logger.exception(f"Turn failed: {e}")
            break

    print_separator()
    print("Console test complete")
    print_separator()
    return 0


if __name__ == '__main__':
    sys.exit(main())
