"""Pattern-based error recovery.

Two sources of remedies:
- A fixed rule table: keyword predicates over the error message map to
  generic strategies (retry with backoff, create a missing file, install
  dependencies...).
- Learned patterns: signatures of errors an operator fixed by hand, stored
  in .swarm/error_patterns.json with the steps that worked.

Recovery is best effort. An action that cannot run raises
RecoveryActionFailure, which is recorded like any other failed attempt
before the next suggestion is tried; nothing in here raises to the caller.
"""

import gc
import hashlib
import re
import subprocess
import sys
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Optional, Union

from pydantic import ValidationError

from .errors import RecoveryActionFailure
from .event_log import EventLogger
from .models import (
    ErrorAnalysis, ErrorExplanation, ErrorInfo, ErrorPattern, ErrorSignature,
    LearnedRecovery, PatternMatch, RecoveryAttempt, RecoveryHistory,
    RecoveryHistoryEntry, RecoveryResult, RecoveryStatistics, RecoverySuggestion,
)
from .workspace import SwarmWorkspace, atomic_write_json, read_json

MATCH_THRESHOLD = 0.5
TYPE_WEIGHT = 0.4
MESSAGE_WEIGHT = 0.3
CONTEXT_WEIGHT = 0.3

# Rule table: category -> strategies
RECOVERY_STRATEGIES: dict[str, list[dict[str, Any]]] = {
    "network_errors": [
        {
            "description": "Retry with exponential backoff",
            "auto_executable": True,
            "action": "retry_with_backoff",
            "params": {"max_attempts": 3, "base_delay": 1},
        },
        {
            "description": "Check network connectivity",
            "auto_executable": False,
            "action": "check_network",
            "params": {"command": "ping -c 1 8.8.8.8"},
        },
    ],
    "file_not_found": [
        {
            "description": "Create missing file with default content",
            "auto_executable": True,
            "action": "create_default_file",
        },
        {
            "description": "Search for similar files in project",
            "auto_executable": True,
            "action": "find_similar_files",
        },
    ],
    "permission_denied": [
        {
            "description": "Fix file permissions",
            "auto_executable": False,
            "action": "fix_permissions",
            "params": {"command": "chmod +x {file_path}"},
        },
        {
            "description": "Run with elevated privileges",
            "auto_executable": False,
            "action": "elevate_privileges",
        },
    ],
    "dependency_missing": [
        {
            "description": "Install missing dependencies",
            "auto_executable": True,
            "action": "install_dependencies",
        },
        {
            "description": "Update package manager",
            "auto_executable": False,
            "action": "update_package_manager",
        },
    ],
    "timeout_error": [
        {
            "description": "Increase timeout and retry",
            "auto_executable": True,
            "action": "retry_with_longer_timeout",
            "params": {"timeout_multiplier": 2.0},
        },
        {
            "description": "Break task into smaller chunks",
            "auto_executable": False,
            "action": "split_task",
        },
    ],
    "memory_error": [
        {
            "description": "Reduce memory usage and retry",
            "auto_executable": True,
            "action": "retry_with_reduced_memory",
        },
        {
            "description": "Clear system memory cache",
            "auto_executable": False,
            "action": "clear_memory_cache",
        },
    ],
}

NETWORK_PATTERNS = [
    "connection", "network", "timeout", "unreachable", "dns",
    "socket", "ssl", "certificate", "refused", "reset",
]
FILESYSTEM_PATTERNS = [
    "no such file", "permission denied", "file not found",
    "directory not found", "access denied", "file exists",
]
DEPENDENCY_PATTERNS = [
    "cannot load", "not found", "missing", "module not found",
    "import error", "no module named",
]
MEMORY_PATTERNS = ["memory", "out of memory", "cannot allocate"]
CRITICAL_PATTERNS = [
    "system", "kernel", "segmentation fault", "access violation",
    "stack overflow", "fatal",
]

GENERIC_PREVENTION_TIPS = [
    "Check the error message for specific details",
    "Verify that all dependencies are properly installed",
    "Ensure file permissions are correct",
    "Check for typos in file paths or commands",
]

DEFAULT_FILE_CONTENT = {
    ".py": "#!/usr/bin/env python3\n# Default Python file\n",
    ".rb": "# frozen_string_literal: true\n\n# Default Ruby file\n",
    ".js": "// Default JavaScript file\n",
    ".ts": "// Default TypeScript file\nexport {};\n",
    ".yml": "# Default YAML configuration\n",
    ".yaml": "# Default YAML configuration\n",
    ".json": "{}\n",
    ".toml": "# Default TOML configuration\n",
}


# =============================================================================
# Error normalization
# =============================================================================


def error_info_from(error: Union[BaseException, ErrorInfo], context: Optional[dict] = None) -> ErrorInfo:
    """Reduce an exception to the fields the rules look at."""
    if isinstance(error, ErrorInfo):
        if context:
            return error.model_copy(update={"context": {**error.context, **context}})
        return error
    return ErrorInfo(type=type(error).__name__, message=str(error), context=context or {})


def extract_message_pattern(message: str) -> str:
    """Normalize a message so errors differing only in paths or numbers match.

    Paths become <PATH>, long hex strings <HASH>, numbers <NUMBER>; only the
    first clause is kept.
    """
    pattern = re.sub(r"/[\w./-]+", "<PATH>", message)
    pattern = re.sub(r"\b[a-f0-9]{8,}\b", "<HASH>", pattern)
    pattern = re.sub(r"\d+", "<NUMBER>", pattern).strip()
    first = re.split(r"[:.!]", pattern, maxsplit=1)[0].strip()
    return first or pattern


def extract_context_patterns(context: dict) -> list[str]:
    """Context keys with the type of their value, e.g. 'file_path:str'."""
    return [f"{key}:{type(value).__name__}" for key, value in context.items() if value is not None]


def extract_error_signature(info: ErrorInfo) -> ErrorSignature:
    return ErrorSignature(
        error_type=info.type,
        message_pattern=extract_message_pattern(info.message),
        context_patterns=extract_context_patterns(info.context),
    )


def generate_pattern_key(info: ErrorInfo) -> str:
    """Stable key grouping errors with the same type and normalized message."""
    raw = f"{info.type}|{extract_message_pattern(info.message)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def common_prefix_length(a: str, b: str) -> int:
    length = 0
    for x, y in zip(a.lower(), b.lower()):
        if x != y:
            break
        length += 1
    return length


def _contains_any(message: str, patterns: list[str]) -> bool:
    lowered = message.lower()
    return any(p in lowered for p in patterns)


def is_network_error(info: ErrorInfo) -> bool:
    return _contains_any(info.message, NETWORK_PATTERNS)


def is_filesystem_error(info: ErrorInfo) -> bool:
    return _contains_any(info.message, FILESYSTEM_PATTERNS) or info.type in (
        "FileNotFoundError", "PermissionError", "FileExistsError"
    )


def is_dependency_error(info: ErrorInfo) -> bool:
    return _contains_any(info.message, DEPENDENCY_PATTERNS) or info.type in (
        "ModuleNotFoundError", "ImportError"
    )


def is_timeout_error(info: ErrorInfo) -> bool:
    return "timeout" in info.type.lower() or "timeout" in info.message.lower()


def is_memory_error(info: ErrorInfo) -> bool:
    return info.type == "MemoryError" or _contains_any(info.message, MEMORY_PATTERNS)


def is_critical_error(info: ErrorInfo) -> bool:
    return _contains_any(info.message, CRITICAL_PATTERNS)


class ErrorRecovery:
    """Analyzes errors, suggests remedies and runs the automatic ones."""

    def __init__(
        self,
        workspace: SwarmWorkspace,
        logger: Optional[EventLogger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize error recovery.

        Args:
            workspace: Workspace holding the pattern store and history
            logger: Event logger
            sleep: Sleep function used between retries (tests pass a no-op)
        """
        self.workspace = workspace
        self.logger = logger or EventLogger(component="recovery", quiet=True)
        self._sleep = sleep
        self.patterns: dict[str, ErrorPattern] = self._load_patterns()
        self.history: RecoveryHistory = self._load_history()

        self._actions: dict[str, Callable[[RecoverySuggestion, dict], dict]] = {
            "retry_with_backoff": self._retry_with_backoff,
            "retry_with_longer_timeout": self._retry_with_longer_timeout,
            "retry_with_reduced_memory": self._retry_with_reduced_memory,
            "create_default_file": self._create_default_file,
            "find_similar_files": self._find_similar_files,
            "install_dependencies": self._install_dependencies,
        }

    # =========================================================================
    # Persistence
    # =========================================================================

    def _load_patterns(self) -> dict[str, ErrorPattern]:
        data = read_json(self.workspace.error_patterns_file)
        if not isinstance(data, dict):
            return {}
        patterns = {}
        for key, value in data.items():
            try:
                patterns[key] = ErrorPattern.model_validate(value)
            except ValidationError:
                print(f"[ErrorRecovery] Warning: Skipping invalid pattern {key}")
        return patterns

    def _save_patterns(self) -> None:
        atomic_write_json(
            self.workspace.error_patterns_file,
            {key: p.model_dump(mode="json") for key, p in self.patterns.items()},
        )

    def _load_history(self) -> RecoveryHistory:
        data = read_json(self.workspace.recovery_history_file)
        if data is None:
            return RecoveryHistory()
        try:
            return RecoveryHistory.model_validate(data)
        except ValidationError:
            print("[ErrorRecovery] Warning: Could not parse recovery history, starting fresh")
            return RecoveryHistory()

    def _save_history(self) -> None:
        atomic_write_json(self.workspace.recovery_history_file, self.history.model_dump(mode="json"))

    # =========================================================================
    # Analysis
    # =========================================================================

    def _match_confidence(self, info: ErrorInfo, pattern: ErrorPattern) -> float:
        normalized = extract_message_pattern(info.message).lower()
        message = info.message.lower()
        incoming_context = set(extract_context_patterns(info.context))

        best = 0.0
        for signature in pattern.error_signatures:
            confidence = 0.0
            if signature.error_type == info.type:
                confidence += TYPE_WEIGHT
            stored = signature.message_pattern.lower()
            if stored and (stored in normalized or stored in message):
                confidence += MESSAGE_WEIGHT
            if signature.context_patterns:
                overlap = len(incoming_context.intersection(signature.context_patterns))
                confidence += overlap / len(signature.context_patterns) * CONTEXT_WEIGHT
            best = max(best, confidence)
        return round(best, 3)

    def find_matching_patterns(self, info: ErrorInfo) -> list[PatternMatch]:
        """Learned patterns matching above the threshold, best first."""
        matches = []
        for key, pattern in self.patterns.items():
            confidence = self._match_confidence(info, pattern)
            if confidence > MATCH_THRESHOLD:
                matches.append(PatternMatch(
                    pattern_key=key,
                    confidence=confidence,
                    explanation=pattern.explanation or "Similar error pattern detected",
                    likely_cause=pattern.likely_cause or "Unknown cause",
                    prevention_tips=pattern.prevention_tips,
                    successful_recoveries=pattern.successful_recoveries,
                ))
        return sorted(matches, key=lambda m: -m.confidence)

    def generic_strategies(self, info: ErrorInfo) -> list[RecoverySuggestion]:
        """Suggestions from the built-in rule table."""
        categories: list[tuple[str, float]] = []
        if is_network_error(info):
            categories.append(("network_errors", 0.7))
        if is_filesystem_error(info):
            lowered = info.message.lower()
            if "permission denied" in lowered or info.type == "PermissionError":
                categories.append(("permission_denied", 0.8))
            elif "no such file" in lowered or "not found" in lowered or info.type == "FileNotFoundError":
                categories.append(("file_not_found", 0.8))
        if is_dependency_error(info):
            categories.append(("dependency_missing", 0.7))
        if is_timeout_error(info):
            categories.append(("timeout_error", 0.6))
        if is_memory_error(info):
            categories.append(("memory_error", 0.6))

        suggestions = []
        for category, confidence in categories:
            for strategy in RECOVERY_STRATEGIES[category]:
                suggestions.append(RecoverySuggestion(
                    confidence=confidence,
                    source="generic",
                    **strategy,
                ))
        return suggestions

    def is_auto_recoverable(self, info: ErrorInfo) -> bool:
        """Critical errors never are; otherwise any auto-executable rule qualifies."""
        if is_critical_error(info):
            return False
        return any(s.auto_executable for s in self.generic_strategies(info))

    def analyze(self, error: Union[BaseException, ErrorInfo], context: Optional[dict] = None) -> ErrorAnalysis:
        """Classify an error and rank remedies.

        Args:
            error: Exception (or pre-built ErrorInfo)
            context: Extra data such as file_path or retry_block

        Returns:
            ErrorAnalysis with matched patterns and ranked suggestions
        """
        info = error_info_from(error, _serializable(context))
        matches = self.find_matching_patterns(info)

        suggestions = []
        for match in matches:
            for recovery in match.successful_recoveries:
                suggestions.append(RecoverySuggestion(
                    description=f"Apply previously successful recovery: {' → '.join(recovery.steps)}",
                    action="manual_recovery",
                    auto_executable=False,
                    confidence=match.confidence,
                    source="learned_pattern",
                    steps=recovery.steps,
                ))
        suggestions.extend(self.generic_strategies(info))
        suggestions.sort(key=lambda s: (-s.confidence, not s.auto_executable))

        self.history.entries.append(RecoveryHistoryEntry(error=info))
        self._save_history()

        return ErrorAnalysis(
            error=info,
            patterns=matches,
            suggestions=suggestions,
            auto_recoverable=self.is_auto_recoverable(info),
        )

    def explain_error(self, error: Union[BaseException, ErrorInfo], context: Optional[dict] = None) -> ErrorExplanation:
        """Human-readable explanation, from a learned pattern when one matches."""
        info = error_info_from(error, _serializable(context))
        matches = self.find_matching_patterns(info)
        if matches:
            primary = matches[0]
            return ErrorExplanation(
                explanation=primary.explanation,
                likely_cause=primary.likely_cause,
                prevention_tips=primary.prevention_tips,
            )

        if is_critical_error(info):
            cause = "A system-level failure that needs manual intervention"
        elif is_network_error(info):
            cause = "A network resource was unreachable or the connection dropped"
        elif is_filesystem_error(info):
            cause = "A file or directory is missing or not accessible"
        elif is_dependency_error(info):
            cause = "A required package or module is not installed"
        elif is_memory_error(info):
            cause = "The process ran out of memory"
        else:
            cause = "The specific cause is unclear from the available information"

        return ErrorExplanation(
            explanation=f"An error of type {info.type} occurred",
            likely_cause=cause,
            prevention_tips=list(GENERIC_PREVENTION_TIPS),
        )

    # =========================================================================
    # Recovery
    # =========================================================================

    def attempt_recovery(self, analysis: ErrorAnalysis, context: Optional[dict] = None) -> RecoveryResult:
        """Run auto-executable suggestions in ranked order until one succeeds.

        Args:
            analysis: Output of analyze()
            context: Action inputs: retry_block (callable), file_path,
                timeout, project_path

        Returns:
            RecoveryResult with every attempt recorded
        """
        context = context or {}
        if not analysis.auto_recoverable:
            return RecoveryResult(success=False)

        attempts: list[RecoveryAttempt] = []
        for suggestion in analysis.suggestions:
            if not suggestion.auto_executable:
                continue

            self.logger.info(f"Attempting automatic recovery: {suggestion.description}")
            action = self._actions.get(suggestion.action)
            try:
                if action is None:
                    raise RecoveryActionFailure(f"Unknown recovery action: {suggestion.action}")
                outcome = action(suggestion, context)
            except RecoveryActionFailure as e:
                self.logger.warn(f"Recovery action skipped: {e}", action=suggestion.action)
                outcome = {"success": False, "error": str(e)}
            except Exception as e:
                self.logger.error(f"Recovery attempt failed: {e}", action=suggestion.action)
                outcome = {"success": False, "error": str(e)}

            attempt = RecoveryAttempt(
                action=suggestion.action,
                description=suggestion.description,
                success=bool(outcome.get("success")),
                detail=_serializable({k: v for k, v in outcome.items() if k not in ("success", "error")}),
                error=outcome.get("error"),
            )
            attempts.append(attempt)

            if attempt.success:
                self._record_attempts(analysis.error, attempts, suggestion.action)
                return RecoveryResult(
                    success=True,
                    action=suggestion.action,
                    detail=attempt.detail,
                    attempts=attempts,
                )

        self._record_attempts(analysis.error, attempts, None)
        return RecoveryResult(success=False, attempts=attempts)

    def _record_attempts(self, info: ErrorInfo, attempts: list[RecoveryAttempt], action: Optional[str]) -> None:
        for entry in reversed(self.history.entries):
            if entry.error == info:
                entry.recovery_attempted = True
                entry.recovery_successful = action is not None
                entry.recovery_action = action
                entry.attempts = attempts
                break
        self._save_history()

    def _retry_with_backoff(self, suggestion: RecoverySuggestion, context: dict) -> dict:
        retry_block = _require_retry_block(context)

        max_attempts = int(suggestion.params.get("max_attempts", 3))
        base_delay = float(suggestion.params.get("base_delay", 1))
        for attempt in range(1, max_attempts + 1):
            try:
                return {"success": True, "result": retry_block(), "attempts": attempt}
            except Exception as e:
                if attempt == max_attempts:
                    return {"success": False, "error": str(e), "attempts": attempt}
                self._sleep(base_delay * (2 ** (attempt - 1)))
        return {"success": False, "error": "No attempts made"}

    def _retry_with_longer_timeout(self, suggestion: RecoverySuggestion, context: dict) -> dict:
        retry_block = _require_retry_block(context)

        multiplier = float(suggestion.params.get("timeout_multiplier", 2.0))
        new_timeout = float(context.get("timeout", 30)) * multiplier
        executor = ThreadPoolExecutor(max_workers=1)
        try:
            result = executor.submit(retry_block).result(timeout=new_timeout)
            return {"success": True, "result": result, "new_timeout": new_timeout}
        except FutureTimeout:
            return {"success": False, "error": f"Timed out after {new_timeout}s", "new_timeout": new_timeout}
        finally:
            executor.shutdown(wait=False)

    def _retry_with_reduced_memory(self, suggestion: RecoverySuggestion, context: dict) -> dict:
        retry_block = _require_retry_block(context)
        gc.collect()
        return {"success": True, "result": retry_block()}

    def _create_default_file(self, suggestion: RecoverySuggestion, context: dict) -> dict:
        file_path = context.get("file_path")
        if not file_path:
            raise RecoveryActionFailure("No file path provided")

        path = Path(file_path)
        if path.exists():
            return {"success": False, "error": f"{path} already exists"}
        path.parent.mkdir(parents=True, exist_ok=True)
        content = default_file_content(path)
        path.write_text(content, encoding="utf-8")
        return {"success": True, "file_created": str(path)}

    def _find_similar_files(self, suggestion: RecoverySuggestion, context: dict) -> dict:
        file_path = context.get("file_path")
        if not file_path:
            raise RecoveryActionFailure("No file path provided")

        path = Path(file_path)
        search_root = path.parent if path.parent.exists() else Path(context.get("project_path", "."))
        stem = path.stem.lower()
        similar = []
        for candidate in search_root.rglob(f"*{path.suffix}"):
            if not candidate.is_file() or candidate == path:
                continue
            other = candidate.stem.lower()
            if stem in other or other in stem or common_prefix_length(stem, other) >= 3:
                similar.append(str(candidate))
        return {"success": bool(similar), "similar_files": sorted(similar)}

    def _install_dependencies(self, suggestion: RecoverySuggestion, context: dict) -> dict:
        project = Path(context.get("project_path") or self.workspace.project_path)
        if (project / "package.json").exists():
            command, manager = ["npm", "install"], "npm"
        elif (project / "Gemfile").exists():
            command, manager = ["bundle", "install"], "bundler"
        elif (project / "requirements.txt").exists():
            command, manager = [sys.executable, "-m", "pip", "install", "-r", "requirements.txt"], "pip"
        elif (project / "pyproject.toml").exists():
            command, manager = [sys.executable, "-m", "pip", "install", "-e", "."], "pip"
        else:
            return {"success": False, "error": "No recognized dependency file found"}

        result = subprocess.run(command, cwd=project, capture_output=True, text=True)
        if result.returncode != 0:
            return {"success": False, "error": result.stderr.strip()[-500:], "package_manager": manager}
        return {"success": True, "package_manager": manager}

    # =========================================================================
    # Learning and statistics
    # =========================================================================

    def learn_from_manual_recovery(
        self,
        error: Union[BaseException, ErrorInfo],
        steps: list[str],
        context: Optional[dict] = None,
        outcome: str = "success",
    ) -> str:
        """Remember the steps that fixed an error.

        Returns:
            Key of the created or updated pattern
        """
        info = error_info_from(error, _serializable(context))
        key = generate_pattern_key(info)
        pattern = self.patterns.setdefault(key, ErrorPattern())

        signature = extract_error_signature(info)
        if not any(s.message_pattern == signature.message_pattern for s in pattern.error_signatures):
            pattern.error_signatures.append(signature)

        pattern.successful_recoveries.append(LearnedRecovery(
            steps=list(steps),
            outcome=outcome,
            context=info.context,
        ))
        pattern.last_seen = datetime.now()
        self._save_patterns()

        self.logger.info(f"Learned new recovery pattern for {info.type}", pattern_key=key)
        return key

    def recovery_statistics(self) -> RecoveryStatistics:
        entries = self.history.entries
        successful = sum(1 for e in entries if e.recovery_successful)
        counts = Counter(e.error.type for e in entries)
        return RecoveryStatistics(
            total_errors_processed=len(entries),
            successful_automatic_recoveries=successful,
            recovery_success_rate=round(successful / len(entries) * 100, 1) if entries else 0.0,
            most_common_errors=dict(counts.most_common(5)),
            recovery_patterns_learned=len(self.patterns),
        )

    def cleanup_old_data(self, days: int = 30) -> int:
        """Drop history entries and patterns not seen within the window.

        Returns:
            Number of entries and patterns removed
        """
        cutoff = datetime.now() - timedelta(days=days)
        before = len(self.history.entries) + len(self.patterns)

        self.history.entries = [e for e in self.history.entries if e.timestamp >= cutoff]
        self.patterns = {
            key: p for key, p in self.patterns.items()
            if p.last_seen is None or p.last_seen >= cutoff
        }
        self._save_history()
        self._save_patterns()

        removed = before - len(self.history.entries) - len(self.patterns)
        self.logger.info(f"Cleaned up error recovery data older than {days} days", removed=removed)
        return removed


def default_file_content(path: Path) -> str:
    """Placeholder content chosen by file extension."""
    suffix = path.suffix.lower()
    if suffix in DEFAULT_FILE_CONTENT:
        return DEFAULT_FILE_CONTENT[suffix]
    if suffix == ".md":
        title = " ".join(w.capitalize() for w in re.split(r"[_\-\s]+", path.stem) if w)
        return f"# {title}\n\nDefault content.\n"
    return f"# Default content for {path.name}\n"


def _require_retry_block(context: dict) -> Callable[[], Any]:
    retry_block = context.get("retry_block")
    if not callable(retry_block):
        raise RecoveryActionFailure("No retry block provided")
    return retry_block


def _serializable(data: Optional[dict]) -> dict:
    """Make a context JSON-safe: callables (retry_block) are dropped, other objects stringified."""
    if not data:
        return {}
    safe = {}
    for key, value in data.items():
        if callable(value):
            continue
        if isinstance(value, (str, int, float, bool, list, dict)) or value is None:
            safe[str(key)] = value
        else:
            safe[str(key)] = str(value)
    return safe
