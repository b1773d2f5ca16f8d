import io
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, File, Form, Request, UploadFile, status
from fastapi.responses import JSONResponse
from PIL import Image

import config
from ai_analysis import AnalysisError, analyze_test_result_image, is_analysis_available, resolve_api_key
from blob_store import BlobStore
from db_store import NotInitialized, Store, StoreError, ValidationFault
from records import (
    ChatRepository,
    MedicationRepository,
    ShareRepository,
    TestResultRepository,
    UserSettingsRepository,
    VaccinationRepository,
    store_stats,
)
from vaccine_validity import validity_status

logger = logging.getLogger("uvicorn.error")

ANALYSIS_STATUS = {
    "missing-key": status.HTTP_400_BAD_REQUEST,
    "invalid-key-format": status.HTTP_400_BAD_REQUEST,
    "too-large": 413,
    "rate-limited": status.HTTP_429_TOO_MANY_REQUESTS,
    "quota-exceeded": status.HTTP_402_PAYMENT_REQUIRED,
}


def not_found(what: str, record_id) -> JSONResponse:
    return JSONResponse({"error": f"{what} {record_id} not found"}, status_code=status.HTTP_404_NOT_FOUND)


async def read_json(request: Request) -> dict:
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationFault("Request body must be JSON")
    if not isinstance(payload, dict):
        raise ValidationFault("Request body must be a JSON object")
    return payload


def with_validity(vaccination: dict, now=None) -> dict:
    return {**vaccination, "validity": validity_status(vaccination["name"], vaccination["date"], now)}


def create_app(db_path: Path, documents_root: Path) -> FastAPI:
    """Build the API around one store handle and one image directory."""
    store = Store(db_path)
    blobs = BlobStore(documents_root, config.IMAGE_DIR_NAME)
    test_results = TestResultRepository(store, blobs)
    settings_repo = UserSettingsRepository(store)
    shares = ShareRepository(store)
    chat = ChatRepository(store)
    medications = MedicationRepository(store)
    vaccinations = VaccinationRepository(store)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        # The store opens on first use
        yield
        store.close()

    app = FastAPI(title="MediWallet", lifespan=lifespan)
    app.state.store = store
    app.state.blobs = blobs

    @app.exception_handler(ValidationFault)
    async def validation_fault(_request: Request, exc: ValidationFault):
        return JSONResponse({"error": str(exc)}, status_code=status.HTTP_400_BAD_REQUEST)

    @app.exception_handler(NotInitialized)
    async def store_unavailable(_request: Request, exc: NotInitialized):
        return JSONResponse({"error": str(exc)}, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)

    @app.exception_handler(StoreError)
    async def store_error(request: Request, exc: StoreError):
        logger.error("Store error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse({"error": str(exc)}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    # --- Store ---

    @app.post("/api/store/init")
    async def init_store():
        store.open()
        return {"ok": True, "schemaVersion": store.schema_report()["version"]}

    @app.get("/api/store/stats")
    async def get_store_stats():
        return store_stats(store, blobs)

    # --- Test results ---

    @app.get("/api/test-results")
    async def list_test_results():
        return test_results.get_all()

    @app.post("/api/test-results", status_code=status.HTTP_201_CREATED)
    async def create_test_result(request: Request):
        payload = await read_json(request)
        source = payload.pop("sourcePath", None)
        if source:
            try:
                payload["imagePath"] = blobs.save_image(source)
            except FileNotFoundError as e:
                return JSONResponse({"error": str(e)}, status_code=status.HTTP_400_BAD_REQUEST)
        new_id = test_results.create(payload)
        return test_results.get_by_id(new_id)

    @app.post("/api/test-results/upload", status_code=status.HTTP_201_CREATED)
    async def upload_test_result(
        file: UploadFile = File(...),
        testType: str = Form(...),
        notes: Optional[str] = Form(None),
    ):
        raw = await file.read()
        if not raw:
            return JSONResponse({"error": "No image uploaded"}, status_code=status.HTTP_400_BAD_REQUEST)
        try:
            Image.open(io.BytesIO(raw)).verify()
        except (OSError, SyntaxError, ValueError):
            return JSONResponse({"error": "Uploaded file is not a valid image"}, status_code=status.HTTP_400_BAD_REQUEST)
        image_path = blobs.save_bytes(raw)
        try:
            new_id = test_results.create({"testType": testType, "imagePath": image_path, "notes": notes})
        except (StoreError, ValidationFault):
            blobs.remove(image_path)
            raise
        return test_results.get_by_id(new_id)

    @app.get("/api/test-results/{record_id}")
    async def get_test_result(record_id: int):
        record = test_results.get_by_id(record_id)
        if record is None:
            return not_found("Test result", record_id)
        return record

    @app.patch("/api/test-results/{record_id}")
    async def update_test_result(record_id: int, request: Request):
        payload = await read_json(request)
        if test_results.get_by_id(record_id) is None:
            return not_found("Test result", record_id)
        test_results.update(record_id, payload)
        return test_results.get_by_id(record_id)

    @app.delete("/api/test-results/{record_id}")
    async def delete_test_result(record_id: int):
        test_results.delete(record_id)
        return {"deleted": record_id}

    @app.post("/api/test-results/{record_id}/analyze")
    async def analyze_test_result(record_id: int):
        record = test_results.get_by_id(record_id)
        if record is None:
            return not_found("Test result", record_id)
        api_key = resolve_api_key(settings_repo.get())
        try:
            analysis = analyze_test_result_image(record["imagePath"], record["testType"], api_key)
        except AnalysisError as e:
            code = ANALYSIS_STATUS.get(e.kind, status.HTTP_502_BAD_GATEWAY)
            return JSONResponse({"error": str(e), "kind": e.kind}, status_code=code)
        except FileNotFoundError as e:
            return JSONResponse({"error": str(e)}, status_code=status.HTTP_404_NOT_FOUND)
        test_results.update(record_id, {"analyzedData": analysis})
        return test_results.get_by_id(record_id)

    @app.get("/api/test-results/{record_id}/shares")
    async def list_shares(record_id: int):
        return shares.get_for_test_result(record_id)

    @app.post("/api/test-results/{record_id}/shares", status_code=status.HTTP_201_CREATED)
    async def create_share(record_id: int, request: Request):
        payload = await read_json(request)
        payload["testResultId"] = record_id
        new_id = shares.create(payload)
        return shares.get_by_id(new_id)

    # --- Settings ---

    @app.get("/api/settings")
    async def get_settings():
        current = settings_repo.get()
        if current is None:
            return JSONResponse({"error": "No settings saved yet"}, status_code=status.HTTP_404_NOT_FOUND)
        return {**current, "analysisAvailable": is_analysis_available(current)}

    @app.put("/api/settings")
    async def save_settings(request: Request):
        payload = await read_json(request)
        settings_repo.save(payload)
        return settings_repo.get()

    @app.patch("/api/settings")
    async def patch_settings(request: Request):
        payload = await read_json(request)
        if settings_repo.update_current(payload) is None:
            return JSONResponse({"error": "No settings saved yet"}, status_code=status.HTTP_404_NOT_FOUND)
        return settings_repo.get()

    # --- Chat ---

    @app.post("/api/chat/messages", status_code=status.HTTP_201_CREATED)
    async def send_message(request: Request):
        payload = await read_json(request)
        new_id = chat.send(payload.get("senderId"), payload.get("receiverId"), payload.get("message"))
        return chat.get_by_id(new_id)

    @app.get("/api/chat/messages")
    async def get_messages(user: str, partner: str):
        return chat.get_messages(user, partner)

    @app.post("/api/chat/read")
    async def mark_read(request: Request):
        payload = await read_json(request)
        sender, receiver = payload.get("senderId"), payload.get("receiverId")
        if not sender or not receiver:
            raise ValidationFault("senderId and receiverId are required")
        return {"updated": chat.mark_read(sender, receiver)}

    @app.get("/api/chat/conversations/{user_id}")
    async def get_conversations(user_id: str):
        return chat.conversations_for(user_id)

    # --- Medications ---

    @app.get("/api/medications")
    async def list_medications():
        return medications.get_all()

    @app.post("/api/medications", status_code=status.HTTP_201_CREATED)
    async def create_medication(request: Request):
        new_id = medications.create(await read_json(request))
        return medications.get_by_id(new_id)

    @app.get("/api/medications/{record_id}")
    async def get_medication(record_id: int):
        record = medications.get_by_id(record_id)
        if record is None:
            return not_found("Medication", record_id)
        return record

    @app.patch("/api/medications/{record_id}")
    async def update_medication(record_id: int, request: Request):
        payload = await read_json(request)
        if medications.get_by_id(record_id) is None:
            return not_found("Medication", record_id)
        medications.update(record_id, payload)
        return medications.get_by_id(record_id)

    @app.delete("/api/medications/{record_id}")
    async def delete_medication(record_id: int):
        medications.delete(record_id)
        return {"deleted": record_id}

    # --- Vaccinations ---

    @app.get("/api/vaccinations")
    async def list_vaccinations(sort: Optional[str] = None):
        return [with_validity(v) for v in vaccinations.get_all(sort=sort)]

    @app.post("/api/vaccinations", status_code=status.HTTP_201_CREATED)
    async def create_vaccination(request: Request):
        new_id = vaccinations.create(await read_json(request))
        return with_validity(vaccinations.get_by_id(new_id))

    @app.get("/api/vaccinations/{record_id}")
    async def get_vaccination(record_id: int):
        record = vaccinations.get_by_id(record_id)
        if record is None:
            return not_found("Vaccination", record_id)
        return with_validity(record)

    @app.patch("/api/vaccinations/{record_id}")
    async def update_vaccination(record_id: int, request: Request):
        payload = await read_json(request)
        if vaccinations.get_by_id(record_id) is None:
            return not_found("Vaccination", record_id)
        vaccinations.update(record_id, payload)
        return with_validity(vaccinations.get_by_id(record_id))

    @app.delete("/api/vaccinations/{record_id}")
    async def delete_vaccination(record_id: int):
        vaccinations.delete(record_id)
        return {"deleted": record_id}

    @app.get("/api/vaccinations/{record_id}/validity")
    async def get_vaccination_validity(record_id: int):
        record = vaccinations.get_by_id(record_id)
        if record is None:
            return not_found("Vaccination", record_id)
        return validity_status(record["name"], record["date"])

    return app


app = create_app(config.DB_PATH, config.DOCUMENTS_ROOT)


if __name__ == "__main__":
    import uvicorn

    print("=" * 50)
    print("MediWallet store API starting (FastAPI)...")
    print("=" * 50)
    print("Access via: http://0.0.0.0:5000 (all network interfaces)")
    print("=" * 50)

    uvicorn.run("app:app", host="0.0.0.0", port=5000, reload=False)
