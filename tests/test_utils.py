from runbox.core.utils import container_name, new_run_id


def test_run_ids_stay_unique_within_a_second():
    ids = {new_run_id() for _ in range(5000)}
    assert len(ids) == 5000


def test_container_name_is_rooted_at_the_session():
    rid = new_run_id()
    assert container_name("runbox-", "s1", rid) == f"runbox-s1-{rid}"
