import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from overlooked.infra.errors import BackendFailure, Conflict, InvalidRequest, NotFound
from overlooked.infra.storage import S3ObjectStore


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeS3Client:
    def __init__(self):
        self.objects = {}
        self.calls = []
        self.delete_errors = []
        self.unreachable = False

    def _record(self, name, **kwargs):
        if self.unreachable:
            raise EndpointConnectionError(endpoint_url="http://s3.invalid")
        self.calls.append((name, kwargs))

    def head_object(self, Bucket, Key):
        self._record("head_object", Bucket=Bucket, Key=Key)
        if (Bucket, Key) not in self.objects:
            raise _client_error("404", "HeadObject")
        return {"ContentLength": len(self.objects[(Bucket, Key)])}

    def put_object(self, Bucket, Key, Body, ContentType):
        self._record("put_object", Bucket=Bucket, Key=Key, ContentType=ContentType)
        self.objects[(Bucket, Key)] = Body
        return {}

    def generate_presigned_url(self, ClientMethod, Params, ExpiresIn):
        self._record("generate_presigned_url", ClientMethod=ClientMethod, Params=Params, ExpiresIn=ExpiresIn)
        return f"https://s3.test/{Params['Bucket']}/{Params['Key']}?X-Amz-Expires={ExpiresIn}"

    def delete_objects(self, Bucket, Delete):
        self._record("delete_objects", Bucket=Bucket, Delete=Delete)
        for item in Delete["Objects"]:
            self.objects.pop((Bucket, item["Key"]), None)
        return {"Errors": list(self.delete_errors)}

    def create_multipart_upload(self, Bucket, Key, ContentType):
        self._record("create_multipart_upload", Bucket=Bucket, Key=Key, ContentType=ContentType)
        return {"UploadId": "up-1"}

    def upload_part(self, Bucket, Key, UploadId, PartNumber, Body):
        self._record("upload_part", UploadId=UploadId, PartNumber=PartNumber)
        return {"ETag": f'"etag-{PartNumber}"'}

    def complete_multipart_upload(self, Bucket, Key, UploadId, MultipartUpload):
        self._record("complete_multipart_upload", UploadId=UploadId, MultipartUpload=MultipartUpload)
        return {}


@pytest.fixture
def s3_client():
    return FakeS3Client()


@pytest.fixture
def store(s3_client):
    return S3ObjectStore(s3_client, public_base_url="https://cdn.test/", upload_ttl_seconds=600)


@pytest.mark.asyncio
async def test_upload_refuses_to_overwrite_without_upsert(store, s3_client):
    await store.upload("chat-uploads", "c1/u1/1.png", b"img", content_type="image/png")

    with pytest.raises(Conflict):
        await store.upload("chat-uploads", "c1/u1/1.png", b"again")

    await store.upload("chat-uploads", "c1/u1/1.png", b"again", upsert=True)
    assert s3_client.objects[("chat-uploads", "c1/u1/1.png")] == b"again"
    assert store.public_url("chat-uploads", "c1/u1/1.png") == "https://cdn.test/chat-uploads/c1/u1/1.png"


@pytest.mark.asyncio
async def test_signed_url_uses_get_object(store, s3_client):
    url = await store.signed_url("films", "uploads/a.mp4", 180)

    assert url == "https://s3.test/films/uploads/a.mp4?X-Amz-Expires=180"
    name, kwargs = s3_client.calls[-1]
    assert name == "generate_presigned_url"
    assert kwargs["ClientMethod"] == "get_object"


@pytest.mark.asyncio
async def test_remove_reports_partial_failures(store, s3_client):
    await store.remove("films", [])
    assert s3_client.calls == []

    s3_client.delete_errors = [{"Key": "b.mp4", "Code": "AccessDenied"}]
    with pytest.raises(BackendFailure) as excinfo:
        await store.remove("films", ["a.mp4", "b.mp4"])

    assert excinfo.value.reason == "storage_remove_failed"


@pytest.mark.asyncio
async def test_multipart_upload_completes_parts_in_order(store, s3_client):
    session = await store.create_upload_session("films", "uploads/v1/source.mp4", content_type="video/mp4")
    await store.upload_part(session, 2, b"tail")
    await store.upload_part(session, 1, b"head")

    path = await store.complete_upload(session)

    assert path == "uploads/v1/source.mp4"
    name, kwargs = s3_client.calls[-1]
    assert name == "complete_multipart_upload"
    assert [part["PartNumber"] for part in kwargs["MultipartUpload"]["Parts"]] == [1, 2]


@pytest.mark.asyncio
async def test_multipart_validation(store):
    session = await store.create_upload_session("films", "uploads/v2/source.mp4")

    with pytest.raises(InvalidRequest):
        await store.upload_part(session, 0, b"x")
    with pytest.raises(InvalidRequest):
        await store.complete_upload(session)


@pytest.mark.asyncio
async def test_driver_errors_are_translated(store, s3_client):
    with pytest.raises(NotFound):
        await store._call("head_object", Bucket="films", Key="missing.mp4")

    s3_client.unreachable = True
    with pytest.raises(BackendFailure) as excinfo:
        await store.signed_url("films", "a.mp4", 60)

    assert excinfo.value.reason == "storage_unavailable"
