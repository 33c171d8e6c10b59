from funnel_app.pipeline.names import ParsedName, parse_full_name


def test_title_is_dropped_and_initial_stays_with_first_name():
    assert parse_full_name("Dr. Jane A. Smith") == ParsedName("Jane A", "Smith")


def test_two_words_split_into_first_and_last():
    assert parse_full_name("Ada Lovelace") == ParsedName("Ada", "Lovelace")


def test_single_word_is_first_name_only():
    assert parse_full_name("Cher") == ParsedName("Cher", None)


def test_blank_input_yields_no_names():
    assert parse_full_name(None) == ParsedName(None, None)
    assert parse_full_name("   ") == ParsedName(None, None)


def test_suffix_is_dropped_and_upper_case_recased():
    assert parse_full_name("JOHN SMITH JR.") == ParsedName("John", "Smith")


def test_surname_particles_join_the_last_name():
    parsed = parse_full_name("ludwig van beethoven")

    assert parsed.first_name == "Ludwig"
    assert parsed.last_name == "Van Beethoven"


def test_hyphenated_and_mixed_case_names_are_preserved():
    assert parse_full_name("Mary-Jane O'Neil") == ParsedName("Mary-Jane", "O'Neil")
    assert parse_full_name("mary-jane watson") == ParsedName("Mary-Jane", "Watson")


def test_extra_whitespace_is_collapsed():
    assert parse_full_name("  Grace   Brewster  Hopper ") == ParsedName("Grace Brewster", "Hopper")
