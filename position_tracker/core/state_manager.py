"""
StateManager Component
Structured diagnostic channel shared by all components. Degraded sources,
open circuits and persistence problems are published here as events so
callers can react to them without parsing log output.
"""

import logging
import time
import uuid
from typing import Dict, Any, List, Optional, Callable

logger = logging.getLogger(__name__)

LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


class DiagnosticEvent:
    """Class representing a single diagnostic event"""

    def __init__(self,
                 component: str,
                 level: str,
                 message: str,
                 details: Optional[Dict[str, Any]] = None,
                 timestamp: Optional[float] = None):
        """
        Initialize an event

        Args:
            component (str): The component that emitted the event
            level (str): Event level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            message (str): Human readable message
            details (Dict[str, Any], optional): Machine readable details
            timestamp (float, optional): Event timestamp. Defaults to current time.
        """
        self.component = component
        self.level = level
        self.message = message
        self.details = details or {}
        self.timestamp = timestamp if timestamp is not None else time.time()
        self.acknowledged = False
        self.id = f"{self.component}-{uuid.uuid4().hex}"

    def acknowledge(self):
        """Mark the event as acknowledged"""
        self.acknowledged = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'component': self.component,
            'level': self.level,
            'message': self.message,
            'details': self.details,
            'timestamp': self.timestamp,
            'acknowledged': self.acknowledged
        }


class StateManager:
    """
    StateManager Component
    Collects diagnostic events and per-component metrics, and fans events
    out to registered listeners.
    """

    def __init__(self, max_events: int = 1000):
        """
        Initialize the StateManager

        Args:
            max_events (int): Number of events kept in memory
        """
        self.events: List[DiagnosticEvent] = []
        self.component_metrics: Dict[str, Dict[str, Any]] = {}
        self.event_listeners: List[Callable[[DiagnosticEvent], None]] = []
        self.max_events = max_events
        logger.debug("StateManager initialized")

    def emit(self,
             component: str,
             level: str,
             message: str,
             details: Optional[Dict[str, Any]] = None) -> DiagnosticEvent:
        """
        Record an event and notify listeners

        Args:
            component (str): Emitting component
            level (str): Event level
            message (str): Event message
            details (Dict[str, Any], optional): Structured details

        Returns:
            DiagnosticEvent: The recorded event
        """
        level = level.upper()
        if level not in LEVELS:
            level = 'INFO'

        event = DiagnosticEvent(component, level, message, details)
        self.events.append(event)

        if len(self.events) > self.max_events:
            self.events = self.events[-self.max_events:]

        logger.log(getattr(logging, level), f"[{component}] {message}")

        for listener in list(self.event_listeners):
            try:
                listener(event)
            except Exception as e:
                # A broken listener must not break the emitting component
                logger.error(f"Error in event listener: {str(e)}")

        return event

    def register_event_listener(self, listener: Callable[[DiagnosticEvent], None]):
        """
        Register a callback invoked for every event

        Args:
            listener: Callable receiving the DiagnosticEvent
        """
        self.event_listeners.append(listener)

    def remove_event_listener(self, listener: Callable[[DiagnosticEvent], None]):
        if listener in self.event_listeners:
            self.event_listeners.remove(listener)

    def get_events(self,
                   component: Optional[str] = None,
                   level: Optional[str] = None,
                   since: Optional[float] = None,
                   unacknowledged_only: bool = False) -> List[DiagnosticEvent]:
        """
        Get events filtered by component, level and time

        Args:
            component (str, optional): Only events from this component
            level (str, optional): Only events at this level
            since (float, optional): Only events at or after this timestamp
            unacknowledged_only (bool): Skip acknowledged events

        Returns:
            List[DiagnosticEvent]: Matching events, oldest first
        """
        result = []
        for event in self.events:
            if component and event.component != component:
                continue
            if level and event.level != level.upper():
                continue
            if since is not None and event.timestamp < since:
                continue
            if unacknowledged_only and event.acknowledged:
                continue
            result.append(event)
        return result

    def acknowledge_event(self, event_id: str) -> bool:
        for event in self.events:
            if event.id == event_id:
                event.acknowledge()
                return True
        return False

    def clear_events(self):
        self.events = []

    def update_component_metric(self, component_name: str, metric_name: str, value: Any):
        """
        Update a metric for a component

        Args:
            component_name (str): Component name
            metric_name (str): Metric name
            value (Any): Metric value
        """
        metrics = self.component_metrics.setdefault(component_name, {})
        metrics[metric_name] = {
            'value': value,
            'timestamp': time.time()
        }

    def get_component_metrics(self, component_name: str) -> Dict[str, Any]:
        """
        Get the latest metric values recorded for a component

        Args:
            component_name (str): Component name

        Returns:
            Dict[str, Any]: Metric name to value
        """
        metrics = self.component_metrics.get(component_name, {})
        return {name: entry['value'] for name, entry in metrics.items()}

    def export_state(self) -> Dict[str, Any]:
        return {
            'events': [event.to_dict() for event in self.events[-100:]],
            'component_metrics': {
                name: self.get_component_metrics(name) for name in self.component_metrics
            },
            'timestamp': time.time()
        }
