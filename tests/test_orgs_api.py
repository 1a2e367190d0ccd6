import pytest
from jose import jwt

from orgpilot.crud import crud
from orgpilot.models.enums import JobStatus
from orgpilot.models.models import Account
from orgpilot.models.models import Org
from orgpilot.models.models import OrgMetadataCache
from orgpilot.utils.time import utc_now_naive


@pytest.fixture
def auth_headers(runtime, user):
    token = jwt.encode({"sub": str(user.id)}, runtime.settings.jwt_secret, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.mark.parametrize("status", [JobStatus.QUEUED, JobStatus.RUNNING])
def test_disconnect_refused_while_job_in_flight(client, auth_headers, make_org, make_job, db_session, status):
    org = make_org()
    make_job(org=org, status=status)

    response = client.delete(f"/api/orgs/{org.id}", headers=auth_headers)

    assert response.status_code == 409
    assert response.json()["detail"] == "Cannot disconnect org while 1 job(s) are queued or running"
    db_session.expire_all()
    assert crud.get_org(db_session, org.id) is not None


def test_disconnect_after_jobs_finish(client, auth_headers, make_org, make_job, db_session):
    org = make_org()
    job = make_job(org=org, status=JobStatus.COMPLETED)
    db_session.add(
        OrgMetadataCache(org_id=org.id, cache_key="objects", data={"sobjects": []}, fetched_at=utc_now_naive(), ttl_seconds=60)
    )
    db_session.commit()

    response = client.delete(f"/api/orgs/{org.id}", headers=auth_headers)

    assert response.status_code == 204
    db_session.expire_all()
    assert crud.get_org(db_session, org.id) is None
    assert db_session.query(OrgMetadataCache).count() == 0
    assert crud.get_job(db_session, job.id).org_id is None


def test_org_of_another_account_is_not_found(client, auth_headers, db_session):
    other = Account(name="Globex")
    db_session.add(other)
    db_session.commit()
    org = Org(account_id=other.id, name="Globex Production", instance_url="https://globex.my.salesforce.com", access_token="x")
    db_session.add(org)
    db_session.commit()

    response = client.delete(f"/api/orgs/{org.id}", headers=auth_headers)

    assert response.status_code == 404
