import json
import logging
import re
from functools import wraps
from typing import Any, Dict, Optional, Tuple

import yaml
from django.http import FileResponse, HttpRequest, HttpResponse, JsonResponse
from django.views.decorators.csrf import csrf_exempt

from .director import get_director
from .errors import DirectorError, ValidationError
from .serializers import (
    DeployRequestSerializer,
    FetchLogsSerializer,
    JobStateSerializer,
    PropertyCreateSerializer,
    PropertyValueSerializer,
    ReleaseUploadSerializer,
    ResolutionsSerializer,
    ResurrectionSerializer,
    ScanRequestSerializer,
    SnapshotDeleteSerializer,
    SnapshotRequestSerializer,
    StemcellUploadSerializer,
)
from .tasks import task_status

logger = logging.getLogger(__name__)

RANGE_PATTERN = re.compile(r"^bytes=(\d*)-(\d*)$")
YAML_CONTENT_TYPES = {"text/yaml", "application/x-yaml", "application/yaml"}


def _parse_json(request: HttpRequest) -> Dict[str, Any]:
    if request.body:
        try:
            payload = json.loads(request.body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ValidationError("Request body is not valid JSON")
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        return payload
    return {}


def _manifest_payload(request: HttpRequest) -> Dict[str, Any]:
    """Deploy bodies may be a raw YAML manifest or a JSON envelope."""
    if request.content_type in YAML_CONTENT_TYPES:
        return {"manifest": request.body.decode("utf-8"), "recreate": request.GET.get("recreate") == "true"}
    return _parse_json(request)


def _validated(serializer_class, data: Dict[str, Any]) -> Dict[str, Any]:
    serializer = serializer_class(data=data)
    if not serializer.is_valid():
        raise ValidationError("Invalid request: " + json.dumps(serializer.errors, sort_keys=True),
                              details=serializer.errors)
    return dict(serializer.validated_data)


def _flag(request: HttpRequest, name: str) -> bool:
    return str(request.GET.get(name, "")).lower() in {"1", "true", "yes"}


def _task_redirect(task) -> JsonResponse:
    response = JsonResponse({"id": task.id, "state": task.state}, status=302)
    response["Location"] = f"/tasks/{task.id}"
    return response


def _error_response(exc: DirectorError) -> JsonResponse:
    return JsonResponse(exc.to_payload(), status=exc.status)


def director_view(*methods: str):
    """Method check, staff authentication and ``DirectorError`` rendering for director endpoints."""

    def decorator(view):
        @csrf_exempt
        @wraps(view)
        def _wrapped(request: HttpRequest, *args, **kwargs):
            if request.method not in methods:
                return JsonResponse({"error": "method not allowed"}, status=405)
            if not request.user.is_authenticated:
                return JsonResponse({"error": "Authentication required"}, status=401)
            if not request.user.is_staff:
                return JsonResponse({"error": "Staff access required"}, status=403)
            try:
                return view(request, *args, **kwargs)
            except DirectorError as exc:
                logger.info("%s %s rejected: %s", request.method, request.path, exc.message)
                return _error_response(exc)

        return _wrapped

    return decorator


def parse_range(header: str) -> Tuple[Optional[int], Optional[int], Optional[int]]:
    """Return ``(start, end, suffix)`` for a single ``bytes=`` range."""
    match = RANGE_PATTERN.match((header or "").strip())
    if not match or (not match.group(1) and not match.group(2)):
        raise ValidationError(f"Unsupported range '{header}'")
    first, last = match.group(1), match.group(2)
    if not first:
        return None, None, int(last)
    return int(first), int(last) if last else None, None


def info(request: HttpRequest) -> JsonResponse:
    if request.method != "GET":
        return JsonResponse({"error": "method not allowed"}, status=405)
    return JsonResponse(get_director().info(request.user))


@director_view("GET")
def tasks_collection(request: HttpRequest) -> JsonResponse:
    states = [state for state in (request.GET.get("state") or "").split(",") if state]
    limit = request.GET.get("limit")
    if limit is not None and not limit.isdigit():
        raise ValidationError(f"Invalid limit '{limit}'")
    tasks = get_director().list_tasks(states=states or None, limit=int(limit) if limit else None,
                                      deployment=request.GET.get("deployment") or None)
    return JsonResponse([task_status(task) for task in tasks], safe=False)


@director_view("GET", "DELETE")
def task_detail(request: HttpRequest, task_id: int) -> JsonResponse:
    director = get_director()
    if request.method == "DELETE":
        task = director.cancel_task(task_id)
        return JsonResponse(task_status(task), status=202)
    return JsonResponse(director.task_status(task_id))


@director_view("GET")
def task_output(request: HttpRequest, task_id: int) -> HttpResponse:
    director = get_director()
    log_type = request.GET.get("type") or "debug"
    header = request.headers.get("Range")
    if not header:
        output = director.task_output(task_id, log_type)
        if not output.data:
            return HttpResponse(status=204)
        return HttpResponse(output.data, content_type="text/plain")
    try:
        start, end, suffix = parse_range(header)
        output = director.task_output(task_id, log_type, start=start, end=end, suffix=suffix)
    except ValidationError as exc:
        if exc.status == 404:
            raise
        total = director.task_output(task_id, log_type).total
        response = HttpResponse(status=416)
        response["Content-Range"] = f"bytes */{total}"
        return response
    if not output.data:
        return HttpResponse(status=204)
    response = HttpResponse(output.data, status=206, content_type="text/plain")
    response["Content-Range"] = f"bytes {output.start}-{output.end}/{output.total}"
    return response


@director_view("GET", "POST")
def deployments_collection(request: HttpRequest) -> JsonResponse:
    director = get_director()
    if request.method == "POST":
        payload = _validated(DeployRequestSerializer, _manifest_payload(request))
        task = director.deploy(payload["manifest"], user=request.user, recreate=payload["recreate"])
        return _task_redirect(task)
    return JsonResponse(director.list_deployments(), safe=False)


@director_view("GET", "DELETE")
def deployment_detail(request: HttpRequest, name: str) -> JsonResponse:
    director = get_director()
    if request.method == "DELETE":
        return _task_redirect(director.delete_deployment(name, force=_flag(request, "force"), user=request.user))
    deployment = director.get_deployment(name)
    return JsonResponse({"name": deployment.name, "manifest": deployment.manifest,
                         "cloud_provider": deployment.cloud_provider})


@director_view("GET")
def deployment_vms(request: HttpRequest, name: str) -> JsonResponse:
    return JsonResponse(get_director().list_vms(name), safe=False)


@director_view("PUT")
def job_state(request: HttpRequest, name: str, job: str, index: Optional[str] = None) -> JsonResponse:
    payload = _parse_json(request)
    if "state" in request.GET:
        payload["state"] = request.GET["state"]
    data = _validated(JobStateSerializer, payload)
    task = get_director().change_job_state(name, data["state"], job=job, index=index, user=request.user)
    return _task_redirect(task)


@director_view("GET", "PUT")
def instance_detail(request: HttpRequest, name: str, job: str, index: str) -> JsonResponse:
    if request.method == "PUT":
        return job_state(request, name, job, index)
    return JsonResponse(get_director().instance_payload(name, job, index))


@director_view("PUT")
def instance_resurrection(request: HttpRequest, name: str, job: str, index: str) -> JsonResponse:
    director = get_director()
    data = _validated(ResurrectionSerializer, _parse_json(request))
    director.set_resurrection(name, job, index, data["resurrection_paused"])
    return JsonResponse(director.instance_payload(name, job, index))


@director_view("GET")
def instance_logs(request: HttpRequest, name: str, job: str, index: str) -> JsonResponse:
    data = _validated(FetchLogsSerializer, request.GET.dict())
    filters = [item for item in data["filters"].split(",") if item]
    task = get_director().fetch_logs(name, job, index, log_type=data["type"], filters=filters, user=request.user)
    return _task_redirect(task)


@director_view("GET", "POST")
def deployment_properties(request: HttpRequest, name: str) -> HttpResponse:
    director = get_director()
    if request.method == "POST":
        data = _validated(PropertyCreateSerializer, _parse_json(request))
        director.create_property(name, data["name"], data["value"])
        return HttpResponse(status=204)
    return JsonResponse(director.list_properties(name), safe=False)


@director_view("GET", "PUT", "DELETE")
def deployment_property(request: HttpRequest, name: str, property_name: str) -> HttpResponse:
    director = get_director()
    if request.method == "PUT":
        data = _validated(PropertyValueSerializer, _parse_json(request))
        director.update_property(name, property_name, data["value"])
        return HttpResponse(status=204)
    if request.method == "DELETE":
        director.delete_property(name, property_name)
        return HttpResponse(status=204)
    return JsonResponse(director.get_property(name, property_name))


@director_view("GET", "POST", "DELETE")
def deployment_snapshots(request: HttpRequest, name: str, job: Optional[str] = None,
                         index: Optional[str] = None) -> JsonResponse:
    director = get_director()
    if request.method == "POST":
        data = _validated(SnapshotRequestSerializer, _parse_json(request))
        return _task_redirect(director.take_snapshot(name, job=job, index=index, clean=data["clean"],
                                                     user=request.user))
    if request.method == "DELETE":
        data = _validated(SnapshotDeleteSerializer, _parse_json(request))
        return _task_redirect(director.delete_snapshots(name, data["snapshot_cids"], user=request.user))
    return JsonResponse(director.list_snapshots(name, job=job, index=index), safe=False)


@director_view("DELETE")
def snapshot_detail(request: HttpRequest, name: str, cid: str) -> JsonResponse:
    return _task_redirect(get_director().delete_snapshots(name, [cid], user=request.user))


@director_view("POST")
def deployment_scans(request: HttpRequest, name: str) -> JsonResponse:
    data = _validated(ScanRequestSerializer, _parse_json(request))
    director = get_director()
    if data["fix"]:
        return _task_redirect(director.scan_and_fix(name, jobs=data["jobs"], user=request.user))
    return _task_redirect(director.scan(name, jobs=data["jobs"], user=request.user))


@director_view("GET", "PUT")
def deployment_problems(request: HttpRequest, name: str) -> JsonResponse:
    director = get_director()
    if request.method == "PUT":
        data = _validated(ResolutionsSerializer, _parse_json(request))
        resolutions = {key: value or None for key, value in data["resolutions"].items()}
        return _task_redirect(director.resolve_problems(name, resolutions, user=request.user))
    return JsonResponse(director.list_problems(name), safe=False)


@director_view("GET", "POST")
def releases_collection(request: HttpRequest) -> JsonResponse:
    director = get_director()
    if request.method == "POST":
        if request.content_type in YAML_CONTENT_TYPES:
            try:
                manifest = yaml.safe_load(request.body.decode("utf-8"))
            except yaml.YAMLError as exc:
                raise ValidationError(f"Invalid release manifest: {exc}")
            payload = {"manifest": manifest, "rebase": _flag(request, "rebase")}
        else:
            payload = _parse_json(request)
        data = _validated(ReleaseUploadSerializer, payload)
        task = director.upload_release(data["manifest"], artifact_ref=data["artifact_ref"], rebase=data["rebase"],
                                       user=request.user)
        return _task_redirect(task)
    return JsonResponse(director.list_releases(), safe=False)


@director_view("GET", "DELETE")
def release_detail(request: HttpRequest, name: str) -> JsonResponse:
    director = get_director()
    if request.method == "GET":
        return JsonResponse(director.release_info(name))
    task = director.delete_release(name, version=request.GET.get("version") or None,
                                   force=_flag(request, "force"), user=request.user)
    return _task_redirect(task)


@director_view("GET", "POST")
def stemcells_collection(request: HttpRequest) -> JsonResponse:
    director = get_director()
    if request.method == "POST":
        data = _validated(StemcellUploadSerializer, _parse_json(request))
        task = director.upload_stemcell(
            data["name"],
            data["version"],
            artifact_ref=data["artifact_ref"],
            cloud_properties=data["cloud_properties"],
            infrastructure=data["infrastructure"],
            user=request.user,
        )
        return _task_redirect(task)
    return JsonResponse(director.list_stemcells(), safe=False)


@director_view("DELETE")
def stemcell_detail(request: HttpRequest, name: str, version: str) -> JsonResponse:
    return _task_redirect(get_director().delete_stemcell(name, version, force=_flag(request, "force"),
                                                         user=request.user))


@director_view("GET", "POST")
def backups(request: HttpRequest) -> HttpResponse:
    director = get_director()
    if request.method == "POST":
        return _task_redirect(director.backup(user=request.user))
    path = director.backup_file()
    return FileResponse(open(path, "rb"), as_attachment=True, filename="backup.tgz",
                        content_type="application/gzip")
